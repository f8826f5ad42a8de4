import pytest
from pymongo.errors import PyMongoError

import assignments
import database


@pytest.fixture
def agents(client, admin, headers):
    h = headers(admin)
    created = []
    for n in (1, 2):
        res = client.post("/api/delivery-agents", json={
            "name": f"Rider {n}",
            "phone_number": f"07700000{n:02d}",
            "email": f"rider{n}@example.com",
            "location": "Colombo",
        }, headers=h)
        created.append(res.json()["data"]["agent_id"])
    return created


def agent(agent_id):
    return database.db["deliveryagent"].find_one({"agent_id": agent_id})


def order(order_id):
    return database.db["order"].find_one({"order_id": order_id})


def assign(client, h, order_id, agent_id, **extra):
    body = {"order_id": order_id, "delivery_agent_id": agent_id}
    body.update(extra)
    return client.post("/api/order-assignments", json=body, headers=h)


def update(client, h, order_id, **fields):
    return client.put("/api/order-assignments", json=dict(fields, order_id=order_id), headers=h)


def test_assign_order_to_agent(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0007")
    assert agents == ["DA001", "DA002"]

    res = assign(client, h, "CBC0007", "DA002", priority="High", notes="Fragile")
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["order_id"] == "CBC0007"
    assert data["delivery_agent_id"] == "DA002"
    assert data["status"] == "Assigned"
    assert data["agent_name"] == "Rider 2"
    assert data["total_amount"] == 200.0

    stored = order("CBC0007")
    assert stored["status"] == "Assigned"
    assert stored["delivery_agent_id"] == "DA002"
    assert stored["assigned_agent"] == str(agent("DA002")["_id"])
    assert agent("DA002")["assigned_orders"] == 1
    assert agent("DA001")["assigned_orders"] == 0

    assert assign(client, h, "CBC0007", "DA001").status_code == 409
    assert database.db["orderassignment"].count_documents({"order_id": "CBC0007"}) == 1


def test_assign_requires_existing_order_and_active_agent(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assert assign(client, h, "CBC0404", "DA001").status_code == 404
    assert assign(client, h, "CBC0001", "DA999").status_code == 404

    client.put("/api/delivery-agents/DA001", json={"status": "Inactive"}, headers=h)
    assert assign(client, h, "CBC0001", "DA001").status_code == 404
    assert assign(client, h, "CBC0001", "DA002", priority="Whenever").status_code == 400


def test_cancelled_order_cannot_be_assigned(client, make_order, agents, admin, headers):
    make_order("CBC0001", status="cancelled")
    assert assign(client, headers(admin), "CBC0001", "DA001").status_code == 400


def test_status_changes_mirror_onto_order(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")

    res = update(client, h, "CBC0001", status="In Progress")
    assert res.json()["data"]["started_date"] is not None
    assert order("CBC0001")["status"] == "shipped"

    res = update(client, h, "CBC0001", status="Completed")
    data = res.json()["data"]
    assert data["completed_date"] is not None
    assert data["assignment_duration"] is not None
    assert order("CBC0001")["status"] == "completed"
    assert agent("DA001")["assigned_orders"] == 0
    assert agent("DA001")["completed_deliveries"] == 1

    actions = [e["action"] for e in data["assignment_history"]]
    assert actions == ["assigned", "status_changed", "status_changed"]


def test_failed_assignment_releases_agent(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")
    update(client, h, "CBC0001", status="Failed")
    assert order("CBC0001")["status"] == "cancelled"
    assert agent("DA001")["assigned_orders"] == 0
    assert agent("DA001")["completed_deliveries"] == 0


def test_reassignment_moves_counters(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")

    res = update(client, h, "CBC0001", delivery_agent_id="DA002", reason="Closer to customer", priority="Urgent")
    data = res.json()["data"]
    assert data["delivery_agent_id"] == "DA002"
    assert data["reassignment_count"] == 1
    assert data["priority"] == "Urgent"
    assert agent("DA001")["assigned_orders"] == 0
    assert agent("DA002")["assigned_orders"] == 1
    assert order("CBC0001")["delivery_agent_id"] == "DA002"
    stored = database.db["orderassignment"].find_one({"order_id": "CBC0001"})
    assert stored["previous_agents"][0]["agent_id"] == "DA001"
    assert stored["previous_agents"][0]["reason"] == "Closer to customer"


def test_completed_assignment_cannot_be_reassigned_or_deleted(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")
    update(client, h, "CBC0001", status="Completed")

    assert update(client, h, "CBC0001", delivery_agent_id="DA002").status_code == 400
    assert client.delete("/api/order-assignments/CBC0001", headers=h).status_code == 400


def test_delete_open_assignment_resets_order(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")

    res = client.delete("/api/order-assignments/CBC0001", headers=h)
    assert res.status_code == 200
    stored = order("CBC0001")
    assert stored["status"] == "processing"
    assert "delivery_agent_id" not in stored
    assert "assigned_agent" not in stored
    assert agent("DA001")["assigned_orders"] == 0
    assert client.get("/api/order-assignments/CBC0001", headers=h).status_code == 404

    assert assign(client, h, "CBC0001", "DA002").status_code == 201


def test_cancelling_order_closes_assignment(client, make_order, agents, admin, customer, headers):
    make_order("CBC0001")
    assign(client, headers(admin), "CBC0001", "DA001")

    assert client.delete("/api/orders/CBC0001", headers=headers(customer)).status_code == 200
    stored = database.db["orderassignment"].find_one({"order_id": "CBC0001"})
    assert stored["status"] == "Cancelled"
    assert stored["assignment_history"][-1]["action"] == "cancelled"
    assert agent("DA001")["assigned_orders"] == 0


def test_removing_cancelled_assignment_keeps_order_cancelled(client, make_order, agents, admin, customer, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")
    client.delete("/api/orders/CBC0001", headers=headers(customer))

    assert client.delete("/api/order-assignments/CBC0001", headers=h).status_code == 200
    stored = order("CBC0001")
    assert stored["status"] == "cancelled"
    assert "delivery_agent_id" not in stored
    assert agent("DA001")["assigned_orders"] == 0
    assert client.get("/api/order-assignments/unassigned", headers=h).json()["data"] == []


def test_removing_failed_assignment_keeps_order_cancelled(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assign(client, h, "CBC0001", "DA001")
    update(client, h, "CBC0001", status="Failed")

    assert client.delete("/api/order-assignments/CBC0001", headers=h).status_code == 200
    assert order("CBC0001")["status"] == "cancelled"


def test_failed_reassignment_restores_agent_counters(client, make_order, agents, admin, headers, monkeypatch):
    make_order("CBC0001")
    assign(client, headers(admin), "CBC0001", "DA001")

    real_bump = assignments._bump_agent
    calls = []

    def flaky_bump(agent_id, assigned=0, completed=0):
        calls.append(agent_id)
        if len(calls) == 2:
            raise PyMongoError("connection reset")
        real_bump(agent_id, assigned=assigned, completed=completed)

    monkeypatch.setattr(assignments, "_bump_agent", flaky_bump)
    with pytest.raises(PyMongoError):
        assignments.update_assignment("CBC0001", delivery_agent_id="DA002")

    assert agent("DA001")["assigned_orders"] == 1
    assert agent("DA002")["assigned_orders"] == 0
    stored = database.db["orderassignment"].find_one({"order_id": "CBC0001"})
    assert stored["delivery_agent_id"] == "DA001"
    assert stored.get("reassignment_count", 0) == 0
    assert order("CBC0001")["delivery_agent_id"] == "DA001"


def test_listing_and_filters(client, make_order, agents, admin, headers):
    h = headers(admin)
    for n in (1, 2, 3):
        make_order(f"CBC000{n}")
    make_order("CBC0004")
    assign(client, h, "CBC0001", "DA001")
    assign(client, h, "CBC0002", "DA002")
    assign(client, h, "CBC0003", "DA002")
    update(client, h, "CBC0003", status="In Progress")

    everything = client.get("/api/order-assignments", headers=h).json()
    assert everything["count"] == 3

    by_agent = client.get("/api/order-assignments", params={"delivery_agent_id": "DA002"}, headers=h).json()
    assert {a["order_id"] for a in by_agent["data"]} == {"CBC0002", "CBC0003"}

    in_progress = client.get("/api/order-assignments", params={"status": "In Progress"}, headers=h).json()
    assert [a["order_id"] for a in in_progress["data"]] == ["CBC0003"]

    paged = client.get("/api/order-assignments", params={"limit": 2, "page": 2}, headers=h).json()
    assert paged["count"] == 1

    unassigned = client.get("/api/order-assignments/unassigned", headers=h).json()
    assert [o["order_id"] for o in unassigned["data"]] == ["CBC0004"]
    assert unassigned["summary"]["total_orders"] == 1

    single = client.get("/api/order-assignments/CBC0002", headers=h).json()["data"]
    assert single["customer_name"] == "Nimal Perera"


def test_statistics(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    make_order("CBC0002")
    make_order("CBC0003")
    assign(client, h, "CBC0001", "DA001")
    assign(client, h, "CBC0002", "DA001")
    update(client, h, "CBC0002", status="Completed")

    stats = client.get("/api/order-assignments/stats", headers=h).json()["data"]
    assert stats["total_assignments"] == 2
    assert stats["by_status"]["Completed"] == 1
    assert stats["by_status"]["Assigned"] == 1
    assert stats["by_agent"]["DA001"] == {"total": 2, "completed": 1, "failed": 0}
    assert stats["completion_rate"] == 50.0
    assert stats["unassigned_orders"] == 1


def test_order_side_endpoints_share_the_assignment_record(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")

    res = client.post("/api/orders/assign-to-agent", json={"order_id": "CBC0001", "delivery_agent_id": "DA001"}, headers=h)
    assert res.status_code == 201
    assert client.get("/api/order-assignments/CBC0001", headers=h).status_code == 200
    assert [a["order_id"] for a in client.get("/api/orders/assignments", headers=h).json()["data"]] == ["CBC0001"]

    res = client.put("/api/orders/assignment-status", json={"order_id": "CBC0001", "status": "In Progress"}, headers=h)
    assert res.json()["data"]["status"] == "In Progress"
    assert order("CBC0001")["status"] == "shipped"

    assert client.get("/api/orders/unassigned", headers=h).json()["count"] == 0
    assert client.delete("/api/orders/unassign/CBC0001", headers=h).status_code == 200
    assert database.db["orderassignment"].count_documents({}) == 0
    assert agent("DA001")["assigned_orders"] == 0


def test_agent_side_assign_route(client, make_order, agents, admin, headers):
    h = headers(admin)
    make_order("CBC0001")
    assert len(client.get("/api/delivery-agents/orders/unassigned", headers=h).json()["data"]) == 1
    res = client.post("/api/delivery-agents/orders/assign", json={"order_id": "CBC0001", "agent_id": "DA002"}, headers=h)
    assert res.status_code == 201
    assert order("CBC0001")["delivery_agent_id"] == "DA002"


def test_assignment_endpoints_are_admin_only(client, customer, farmer, headers):
    assert client.get("/api/order-assignments", headers=headers(customer)).status_code == 403
    assert client.get("/api/order-assignments", headers=headers(farmer)).status_code == 403
    assert client.get("/api/order-assignments").status_code == 401
