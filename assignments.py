"""
Order-to-delivery-agent assignments.

The "orderassignment" collection is the authoritative record of who delivers
an order. The assignment fields on the order itself (status, delivery_agent_id,
assigned_agent, assigned_at) and the agent's assigned_orders counter are
derived from it, and every write path in the API goes through the functions
in this module so the three documents move together. assign_order and
update_assignment roll back their earlier writes when a later one fails.
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Capability, require
from database import db, create_document, serialize_doc, utcnow
from schemas import (
    ASSIGNMENT_STATUSES,
    ASSIGNMENT_PRIORITIES,
    OPEN_ASSIGNMENT_STATUSES,
    DEFAULT_PRODUCT_IMAGE,
    AssignmentHistoryEntry,
    OrderAssignment as OrderAssignmentSchema,
)

logger = logging.getLogger("farmmarket.assignments")

router = APIRouter(prefix="/api/order-assignments", tags=["order-assignments"])

dispatcher = require(Capability.MANAGE_DELIVERY, "Admin access required")

AssignmentStatus = Literal["Assigned", "In Progress", "Completed", "Failed", "Cancelled"]
AssignmentPriority = Literal["Low", "Normal", "High", "Urgent"]

# Order status mirrored from the assignment status.
ORDER_STATUS_FOR_ASSIGNMENT = {
    "Assigned": "Assigned",
    "In Progress": "shipped",
    "Completed": "completed",
    "Failed": "cancelled",
    "Cancelled": "cancelled",
}

UNASSIGNABLE_ORDER_STATUSES = ("cancelled", "completed")


class CreateAssignmentRequest(BaseModel):
    order_id: str
    delivery_agent_id: str
    priority: AssignmentPriority = "Normal"
    notes: str = ""


class UpdateAssignmentRequest(BaseModel):
    order_id: str
    status: Optional[AssignmentStatus] = None
    priority: Optional[AssignmentPriority] = None
    notes: Optional[str] = None
    delivery_agent_id: Optional[str] = None
    reason: Optional[str] = None


# Helpers
def order_total(ordered_items: Optional[List[dict]]) -> float:
    total = 0.0
    for item in ordered_items or []:
        try:
            total += float(item.get("price", 0)) * int(item.get("quantity", 0))
        except (TypeError, ValueError):
            continue
    return round(total, 2)


def format_order_items(ordered_items: Optional[List[dict]]) -> List[dict]:
    return [
        {
            "name": item.get("name") or "Unknown Item",
            "price": item.get("price", 0),
            "quantity": item.get("quantity", 0),
            "image": item.get("image") or DEFAULT_PRODUCT_IMAGE,
            "product_id": item.get("product_id"),
            "status": item.get("status", "pending"),
        }
        for item in ordered_items or []
    ]


def find_order(order_ref: str) -> Optional[dict]:
    order = db["order"].find_one({"order_id": order_ref})
    if not order and ObjectId.is_valid(order_ref):
        order = db["order"].find_one({"_id": ObjectId(order_ref)})
    return order


def _get_assignment(order_id: str) -> dict:
    assignment = db["orderassignment"].find_one({"order_id": order_id})
    if not assignment:
        raise HTTPException(status_code=404, detail=f"Order assignment not found for order ID: {order_id}")
    return assignment


def _active_agent(agent_id: str) -> Optional[dict]:
    return db["deliveryagent"].find_one({"agent_id": agent_id, "status": "Active"})


def _bump_agent(agent_id: str, assigned: int = 0, completed: int = 0):
    now = utcnow()
    if assigned < 0:
        db["deliveryagent"].update_one(
            {"agent_id": agent_id, "assigned_orders": {"$gt": 0}},
            {"$inc": {"assigned_orders": assigned}, "$set": {"updated_at": now}},
        )
    elif assigned > 0:
        db["deliveryagent"].update_one(
            {"agent_id": agent_id},
            {"$inc": {"assigned_orders": assigned}, "$set": {"last_active": now, "updated_at": now}},
        )
    if completed:
        db["deliveryagent"].update_one({"agent_id": agent_id}, {"$inc": {"completed_deliveries": completed}})


def _history(action: str, previous=None, new=None, performed_by=None, reason=None) -> dict:
    return AssignmentHistoryEntry(
        action=action,
        previous_value=previous,
        new_value=new,
        timestamp=utcnow(),
        performed_by=performed_by,
        reason=reason,
    ).model_dump()


def enrich(assignment: dict, order: Optional[dict], agent: Optional[dict]) -> dict:
    order = order or {}
    items = format_order_items(order.get("ordered_items"))
    data = {
        "id": str(assignment["_id"]),
        "order_id": assignment["order_id"],
        "delivery_agent_id": assignment["delivery_agent_id"],
        "status": assignment["status"],
        "priority": assignment.get("priority", "Normal"),
        "notes": assignment.get("notes", ""),
        "assigned_date": assignment.get("assigned_date"),
        "started_date": assignment.get("started_date"),
        "completed_date": assignment.get("completed_date"),
        "reassignment_count": assignment.get("reassignment_count", 0),
        "assignment_history": assignment.get("assignment_history", []),
        "customer_name": order.get("name"),
        "customer_address": order.get("address"),
        "customer_phone": order.get("phone"),
        "customer_email": order.get("email"),
        "order_status": order.get("status"),
        "total_amount": order_total(order.get("ordered_items")),
        "order_items": items,
        "item_count": len(items),
        "agent_name": agent.get("name") if agent else "Unknown Agent",
        "agent_email": agent.get("email") if agent else None,
        "agent_phone": agent.get("phone_number") if agent else None,
    }
    if assignment.get("completed_date") and assignment.get("assigned_date"):
        delta = assignment["completed_date"] - assignment["assigned_date"]
        data["assignment_duration"] = round(delta.total_seconds() / 60)
    else:
        data["assignment_duration"] = None
    return serialize_doc(data)


def enrich_by_order_id(order_id: str) -> dict:
    assignment = _get_assignment(order_id)
    order = db["order"].find_one({"order_id": order_id})
    agent = db["deliveryagent"].find_one({"agent_id": assignment["delivery_agent_id"]})
    return enrich(assignment, order, agent)


# Service operations
def assign_order(order_ref: str, agent_id: str, priority: str = "Normal", notes: str = "", performed_by: Optional[str] = None) -> dict:
    order = find_order(order_ref)
    if not order:
        raise HTTPException(status_code=404, detail=f'Order with ID "{order_ref}" not found')
    if order.get("status") in UNASSIGNABLE_ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Order cannot be assigned, it's already {order['status']}")

    agent = _active_agent(agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail=f'Active delivery agent with ID "{agent_id}" not found')

    existing = db["orderassignment"].find_one({"order_id": order["order_id"]})
    if existing:
        raise HTTPException(
            status_code=409,
            detail=f'Order "{order["order_id"]}" is already assigned to agent "{existing["delivery_agent_id"]}"',
        )

    now = utcnow()
    assignment = OrderAssignmentSchema(
        order_id=order["order_id"],
        delivery_agent_id=agent_id,
        priority=priority,
        notes=notes,
        status="Assigned",
        assigned_date=now,
        created_by=performed_by,
        last_modified_by=performed_by,
        assignment_history=[AssignmentHistoryEntry(action="assigned", new_value=agent_id, timestamp=now, performed_by=performed_by)],
    )
    try:
        create_document("orderassignment", assignment)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail=f'Order "{order["order_id"]}" is already assigned')

    agent_bumped = False
    try:
        _bump_agent(agent_id, assigned=1)
        agent_bumped = True
        db["order"].update_one(
            {"order_id": order["order_id"]},
            {"$set": {
                "status": "Assigned",
                "assigned_agent": str(agent["_id"]),
                "delivery_agent_id": agent_id,
                "assigned_at": now,
                "updated_at": now,
            }},
        )
    except PyMongoError:
        logger.exception("assignment of %s to %s failed; rolling back", order["order_id"], agent_id)
        if agent_bumped:
            _bump_agent(agent_id, assigned=-1)
        db["orderassignment"].delete_one({"order_id": order["order_id"]})
        raise

    logger.info("order %s assigned to agent %s by=%s", order["order_id"], agent_id, performed_by)
    return enrich_by_order_id(order["order_id"])


def update_assignment(
    order_id: str,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    notes: Optional[str] = None,
    delivery_agent_id: Optional[str] = None,
    reason: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> dict:
    if status is not None and status not in ASSIGNMENT_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status. Valid statuses are: " + ", ".join(ASSIGNMENT_STATUSES))
    if priority is not None and priority not in ASSIGNMENT_PRIORITIES:
        raise HTTPException(status_code=400, detail="Invalid priority. Valid priorities are: " + ", ".join(ASSIGNMENT_PRIORITIES))

    assignment = _get_assignment(order_id)
    now = utcnow()
    current_agent = assignment["delivery_agent_id"]
    was_open = assignment["status"] in OPEN_ASSIGNMENT_STATUSES
    updates: Dict[str, Any] = {}
    history: List[dict] = []
    order_updates: Dict[str, Any] = {}
    counter_moves: List[tuple] = []

    if delivery_agent_id and delivery_agent_id != current_agent:
        if not was_open:
            raise HTTPException(status_code=400, detail=f"Cannot reassign a {assignment['status'].lower()} assignment")
        new_agent = _active_agent(delivery_agent_id)
        if not new_agent:
            raise HTTPException(status_code=404, detail=f'New delivery agent "{delivery_agent_id}" not found or inactive')
        counter_moves.append((current_agent, -1, 0))
        counter_moves.append((delivery_agent_id, 1, 0))
        updates["delivery_agent_id"] = delivery_agent_id
        updates["reassignment_count"] = assignment.get("reassignment_count", 0) + 1
        updates["previous_agents"] = assignment.get("previous_agents", []) + [{
            "agent_id": current_agent,
            "assigned_date": assignment.get("assigned_date"),
            "reassigned_date": now,
            "reason": reason or "Admin reassignment",
        }]
        history.append(_history("reassigned", current_agent, delivery_agent_id, performed_by, reason))
        order_updates["assigned_agent"] = str(new_agent["_id"])
        order_updates["delivery_agent_id"] = delivery_agent_id
        current_agent = delivery_agent_id
        logger.info("order %s reassigned to %s", order_id, delivery_agent_id)

    if status and status != assignment["status"]:
        updates["status"] = status
        history.append(_history("status_changed", assignment["status"], status, performed_by))
        if status == "In Progress" and not assignment.get("started_date"):
            updates["started_date"] = now
        if status == "Completed":
            updates["completed_date"] = now
        now_open = status in OPEN_ASSIGNMENT_STATUSES
        if was_open and not now_open:
            counter_moves.append((current_agent, -1, 1 if status == "Completed" else 0))
        elif not was_open and now_open:
            counter_moves.append((current_agent, 1, 0))
        order_updates["status"] = ORDER_STATUS_FOR_ASSIGNMENT[status]
        logger.info("assignment %s status %s -> %s", order_id, assignment["status"], status)

    if priority and priority != assignment.get("priority"):
        updates["priority"] = priority
        history.append(_history("priority_changed", assignment.get("priority"), priority, performed_by))

    if notes is not None:
        updates["notes"] = notes

    updates["last_modified_by"] = performed_by
    updates["updated_at"] = now
    change = {"$set": updates}
    if history:
        change["$push"] = {"assignment_history": {"$each": history}}
    applied = []
    written = False
    try:
        for agent_id, assigned, completed in counter_moves:
            _bump_agent(agent_id, assigned=assigned, completed=completed)
            applied.append((agent_id, assigned, completed))
        db["orderassignment"].update_one({"_id": assignment["_id"]}, change)
        written = True
        if order_updates:
            order_updates["updated_at"] = now
            db["order"].update_one({"order_id": order_id}, {"$set": order_updates})
    except PyMongoError:
        logger.exception("update of assignment %s failed; rolling back", order_id)
        for agent_id, assigned, completed in reversed(applied):
            _bump_agent(agent_id, assigned=-assigned, completed=-completed)
        if written:
            db["orderassignment"].replace_one({"_id": assignment["_id"]}, assignment)
        raise

    return enrich_by_order_id(order_id)


def unassign_order(order_id: str) -> str:
    assignment = _get_assignment(order_id)
    if assignment["status"] == "Completed":
        raise HTTPException(status_code=400, detail="Cannot unassign completed orders")

    if assignment["status"] in OPEN_ASSIGNMENT_STATUSES:
        _bump_agent(assignment["delivery_agent_id"], assigned=-1)
    db["orderassignment"].delete_one({"_id": assignment["_id"]})
    order_change: Dict[str, Any] = {
        "$set": {"updated_at": utcnow()},
        "$unset": {"assigned_agent": "", "delivery_agent_id": "", "assigned_at": ""},
    }
    # A closed assignment already set the final order status.
    if assignment["status"] in OPEN_ASSIGNMENT_STATUSES:
        order_change["$set"]["status"] = "processing"
    db["order"].update_one({"order_id": order_id}, order_change)
    logger.info("order %s unassigned from agent %s", order_id, assignment["delivery_agent_id"])
    return assignment["delivery_agent_id"]


def close_for_cancelled_order(order_id: str, performed_by: Optional[str] = None):
    assignment = db["orderassignment"].find_one({"order_id": order_id})
    if not assignment or assignment["status"] not in OPEN_ASSIGNMENT_STATUSES:
        return
    _bump_agent(assignment["delivery_agent_id"], assigned=-1)
    db["orderassignment"].update_one(
        {"_id": assignment["_id"]},
        {
            "$set": {"status": "Cancelled", "last_modified_by": performed_by, "updated_at": utcnow()},
            "$push": {"assignment_history": _history("cancelled", assignment["status"], "Cancelled", performed_by, "Order cancelled")},
        },
    )
    logger.info("assignment for cancelled order %s closed", order_id)


def list_assignments(status: Optional[str] = None, agent_id: Optional[str] = None, page: int = 1, limit: int = 50,
                     sort_by: str = "assigned_date", sort_order: str = "desc") -> List[dict]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if agent_id:
        query["delivery_agent_id"] = agent_id
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    assignments = list(
        db["orderassignment"].find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
    )
    orders = {o["order_id"]: o for o in db["order"].find({"order_id": {"$in": [a["order_id"] for a in assignments]}})}
    agents = {a["agent_id"]: a for a in db["deliveryagent"].find({"agent_id": {"$in": [a["delivery_agent_id"] for a in assignments]}})}
    result = []
    for assignment in assignments:
        order = orders.get(assignment["order_id"])
        if not order:
            logger.warning("order not found for assignment %s", assignment["order_id"])
            continue
        result.append(enrich(assignment, order, agents.get(assignment["delivery_agent_id"])))
    return result


def _unassigned_query() -> dict:
    return {"order_id": {"$nin": db["orderassignment"].distinct("order_id")}, "status": "processing"}


def count_unassigned_orders() -> int:
    return db["order"].count_documents(_unassigned_query())


def list_unassigned_orders(limit: int = 50) -> List[dict]:
    orders = db["order"].find(_unassigned_query()).sort("date", DESCENDING).limit(limit)
    result = []
    for order in orders:
        items = format_order_items(order.get("ordered_items"))
        result.append(serialize_doc({
            "id": order["_id"],
            "order_id": order["order_id"],
            "customer_name": order.get("name"),
            "customer_address": order.get("address"),
            "customer_phone": order.get("phone"),
            "customer_email": order.get("email"),
            "total_amount": order_total(order.get("ordered_items")),
            "order_items": items,
            "item_count": len(items),
            "notes": order.get("notes", ""),
            "order_status": order.get("status"),
            "created_at": order.get("date"),
        }))
    return result


# Routes
@router.post("", status_code=201)
def create_order_assignment(req: CreateAssignmentRequest, admin=Depends(dispatcher)):
    data = assign_order(req.order_id, req.delivery_agent_id, req.priority, req.notes, str(admin["_id"]))
    return {"success": True, "message": "Order assigned successfully", "data": data}


@router.get("")
def get_assigned_orders(
    status: Optional[AssignmentStatus] = None,
    delivery_agent_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    sort_by: Literal["assigned_date", "priority", "status", "order_id"] = "assigned_date",
    sort_order: Literal["asc", "desc"] = "desc",
    admin=Depends(dispatcher),
):
    data = list_assignments(status, delivery_agent_id, page, limit, sort_by, sort_order)
    return {
        "success": True,
        "count": len(data),
        "data": data,
        "pagination": {"current_page": page, "limit": limit, "total_displayed": len(data)},
    }


@router.get("/unassigned")
def get_unassigned_orders(limit: int = Query(50, ge=1, le=200), admin=Depends(dispatcher)):
    data = list_unassigned_orders(limit)
    return {
        "success": True,
        "count": len(data),
        "data": data,
        "summary": {
            "total_orders": len(data),
            "total_value": round(sum(o["total_amount"] for o in data), 2),
            "total_items": sum(o["item_count"] for o in data),
        },
    }


@router.get("/stats")
def assignment_statistics(admin=Depends(dispatcher)):
    by_status = {s: 0 for s in ASSIGNMENT_STATUSES}
    by_priority = {p: 0 for p in ASSIGNMENT_PRIORITIES}
    by_agent: Dict[str, Dict[str, int]] = {}
    total = 0
    for a in db["orderassignment"].find({}, {"status": 1, "priority": 1, "delivery_agent_id": 1}):
        total += 1
        by_status[a["status"]] = by_status.get(a["status"], 0) + 1
        by_priority[a.get("priority", "Normal")] = by_priority.get(a.get("priority", "Normal"), 0) + 1
        agent_stats = by_agent.setdefault(a["delivery_agent_id"], {"total": 0, "completed": 0, "failed": 0})
        agent_stats["total"] += 1
        if a["status"] == "Completed":
            agent_stats["completed"] += 1
        elif a["status"] == "Failed":
            agent_stats["failed"] += 1
    completion_rate = round(by_status["Completed"] / total * 100, 2) if total else 0
    return {
        "success": True,
        "data": {
            "total_assignments": total,
            "by_status": by_status,
            "by_priority": by_priority,
            "by_agent": by_agent,
            "completion_rate": completion_rate,
            "unassigned_orders": count_unassigned_orders(),
        },
    }


@router.get("/{order_id}")
def get_assigned_order(order_id: str, admin=Depends(dispatcher)):
    return {"success": True, "data": enrich_by_order_id(order_id)}


@router.put("")
def update_order_assignment(req: UpdateAssignmentRequest, admin=Depends(dispatcher)):
    data = update_assignment(
        req.order_id,
        status=req.status,
        priority=req.priority,
        notes=req.notes,
        delivery_agent_id=req.delivery_agent_id,
        reason=req.reason,
        performed_by=str(admin["_id"]),
    )
    return {"success": True, "message": "Order assignment updated successfully", "data": data}


@router.delete("/{order_id}")
def delete_order_assignment(order_id: str, admin=Depends(dispatcher)):
    unassign_order(order_id)
    return {
        "success": True,
        "message": f"Order assignment deleted successfully. Order {order_id} is now available for reassignment.",
    }
