from datetime import datetime

import pytest

import database
import payments
from conftest import MERCHANT_ID, MERCHANT_SECRET
from payhere import generate_payhere_hash, get_notification_verifier

CUSTOMER = {
    "first_name": "Ayesha",
    "last_name": "Fernando",
    "email": "Ayesha@Example.com",
    "phone": "+94 71 555 1234",
    "address": "5 Lake Drive",
}


def subscription(email="ayesha@example.com"):
    return database.db["foodsubscription"].find_one({"user_email": email})


def logs(action=None):
    query = {"action": action} if action else {}
    return list(database.db["foodsubscriptionlog"].find(query))


@pytest.fixture
def record(client):
    res = client.post("/api/create-food-subscription-record", json={
        "user_email": "ayesha@example.com",
        "customer_name": "Ayesha Fernando",
        "address": "5 Lake Drive",
        "payhere_order_id": "FOOD_RECURRING_1_1",
        "payhere_recurring_token": "SUB-777",
    })
    assert res.status_code == 200
    return res.json()


def notify(client, data, as_json=False):
    if as_json:
        return client.post("/api/payhere-notify", json=data)
    return client.post("/api/payhere-notify", data=data)


def test_cart_payment_creates_pending_order(client):
    res = client.post("/api/create-cart-payment", json={
        "amount": 1250,
        "cart_items": [{"product_id": "product-1", "product_name": "Leeks", "quantity": 5, "price": 250}],
        "customer_data": CUSTOMER,
    })
    assert res.status_code == 200
    body = res.json()
    order_id = body["order_id"]
    assert order_id.startswith("CART_")

    payload = body["payment_data"]
    assert payload["merchant_id"] == MERCHANT_ID
    assert payload["amount"] == "1250.00"
    assert payload["phone"] == "0715551234"
    assert payload["email"] == "ayesha@example.com"
    assert payload["items"] == "Leeks (x5)"
    assert payload["custom_1"] == "cart_order"
    assert payload["hash"] == generate_payhere_hash(MERCHANT_ID, order_id, 1250, "LKR", MERCHANT_SECRET)

    stored = database.db["cartorder"].find_one({"payhere_order_id": order_id})
    assert stored["payment_status"] == "pending"
    assert stored["items"][0]["total_price"] == 1250
    assert stored["customer_name"] == "Ayesha Fernando"


@pytest.mark.parametrize("change, message", [
    ({"amount": 0}, "Invalid amount"),
    ({"customer_data": dict(CUSTOMER, address="")}, "Customer information is required"),
    ({"customer_data": dict(CUSTOMER, email="not-an-email")}, "Validation failed"),
    ({"customer_data": dict(CUSTOMER, email="x@@y.com")}, "Validation failed"),
])
def test_cart_payment_validation(client, change, message):
    body = dict({"amount": 100, "customer_data": CUSTOMER}, **change)
    res = client.post("/api/create-cart-payment", json=body)
    assert res.status_code == 400
    assert res.json()["message"] == message


def test_subscription_payment_payload(client):
    res = client.post("/api/create-food-subscription-payment", json={
        "amount": 2500,
        "plan_id": "food_premium",
        "customer_data": {"name": "Ayesha Fernando", "email": "ayesha@example.com", "address": "5 Lake Drive"},
    })
    body = res.json()
    assert body["recurring"] is True
    payload = body["payment_data"]
    assert payload["order_id"].startswith("FOOD_RECURRING_")
    assert payload["amount"] == "2500.00"
    assert payload["recurrence"] == "1 Month"
    assert payload["duration"] == "Forever"
    assert payload["custom_1"] == "plan_food_premium"
    assert payload["custom_2"] == "food_monthly_recurring"
    assert payload["first_name"] == "Ayesha"
    assert payload["last_name"] == "Fernando"
    assert payload["hash"] == generate_payhere_hash(MERCHANT_ID, payload["order_id"], 2500, "LKR", MERCHANT_SECRET)


def test_subscription_payment_amount_is_fixed(client):
    res = client.post("/api/create-food-subscription-payment", json={
        "amount": 2000,
        "customer_data": {"name": "A", "email": "a@example.com", "address": "X"},
    })
    assert res.status_code == 400


def test_subscription_record_is_idempotent(client, record):
    assert record["message"] == "Food subscription record created successfully"
    again = client.post("/api/create-food-subscription-record", json={
        "user_email": "ayesha@example.com",
        "customer_name": "Ayesha Fernando",
        "address": "5 Lake Drive",
        "payhere_order_id": "FOOD_RECURRING_1_1",
    }).json()
    assert again["subscription_id"] == record["subscription_id"]
    assert again["message"] == "Subscription record already exists"
    assert database.db["foodsubscription"].count_documents({}) == 1
    assert len(logs("created")) == 1


def test_notification_with_bad_signature_is_rejected(client, signed):
    data = signed(order_id="CART_1_1", payhere_amount="100.00", custom_1="cart_order")
    data["md5sig"] = "0" * 32
    assert notify(client, data).status_code == 400


def test_cart_notifications(client, signed):
    created = client.post("/api/create-cart-payment", json={"amount": 300, "customer_data": CUSTOMER}).json()
    order_id = created["order_id"]

    res = notify(client, signed(order_id=order_id, payhere_amount="300.00", custom_1="cart_order", payment_id="PAY-1"))
    assert res.status_code == 200
    stored = database.db["cartorder"].find_one({"payhere_order_id": order_id})
    assert stored["payment_status"] == "completed"
    assert stored["order_status"] == "confirmed"
    assert stored["payhere_payment_id"] == "PAY-1"

    status = client.get(f"/api/cart-orders/{order_id}").json()["order"]
    assert status["payment_status"] == "completed"
    assert client.get("/api/cart-orders/CART_0_0").status_code == 404


def test_failed_cart_notification_as_json(client, signed):
    order_id = client.post("/api/create-cart-payment", json={"amount": 300, "customer_data": CUSTOMER}).json()["order_id"]
    notify(client, signed(order_id=order_id, payhere_amount="300.00", custom_1="cart_order", status_code="-2"), as_json=True)
    stored = database.db["cartorder"].find_one({"payhere_order_id": order_id})
    assert stored["payment_status"] == "failed"
    assert stored["order_status"] == "cancelled"


def test_initial_payment_creates_subscription(client, signed):
    notify(client, signed(
        order_id="FOOD_RECURRING_9_9",
        payhere_amount="2500.00",
        custom_1="plan_food_premium",
        custom_2="food_monthly_recurring",
        recurring_token="TOKEN-1",
        email="Nuwan@Example.com",
        next_occurrence_date="2026-12-01",
    ))
    sub = subscription("nuwan@example.com")
    assert sub["status"] == "active"
    assert sub["auto_renew"] is True
    assert sub["payhere_recurring_token"] == "TOKEN-1"
    assert sub["next_billing_date"] == datetime(2026, 12, 1)
    assert len(sub["renewal_history"]) == 1
    assert logs("created")[0]["subscription_id"] == str(sub["_id"])


def test_recurring_success_extends_period(client, record, signed):
    before = subscription()
    notify(client, signed(order_id="FOOD_RECURRING_1_1", subscription_id="SUB-777", payhere_amount="2500.00"))
    after = subscription()
    assert after["end_date"] > before["end_date"]
    assert after["end_date"] == payments.add_month(before["end_date"])
    assert after["renewal_attempts"] == 0
    assert after["renewal_history"][-1]["status"] == "success"
    assert len(logs("renewed")) == 1


def test_duplicate_renewal_notification_is_ignored(client, record, signed):
    data = signed(order_id="FOOD_RECURRING_1_1", subscription_id="SUB-777", payhere_amount="2500.00", payment_id="PAY-X")
    notify(client, data)
    end_date = subscription()["end_date"]
    notify(client, data)
    assert subscription()["end_date"] == end_date
    assert len(logs("renewed")) == 1


def test_max_failed_renewals_cancel_subscription(client, record, signed):
    for attempt in range(1, 4):
        notify(client, signed(
            order_id="FOOD_RECURRING_1_1", subscription_id="SUB-777", payhere_amount="2500.00", status_code="-2",
        ))
        sub = subscription()
        assert sub["renewal_attempts"] == attempt
        assert sub["payment_failure"] is True
        if attempt < 3:
            assert sub["status"] == "pending_renewal"
            assert sub["auto_renew"] is True

    assert sub["status"] == "cancelled"
    assert sub["auto_renew"] is False
    assert len(logs("failed")) == 3
    assert len(logs("auto_renewal_cancelled")) == 1

    end_date = sub["end_date"]
    notify(client, signed(order_id="FOOD_RECURRING_1_1", subscription_id="SUB-777", payhere_amount="2500.00"))
    sub = subscription()
    assert sub["status"] == "cancelled"
    assert sub["end_date"] == end_date
    assert logs("renewed") == []


def test_failed_initial_payment(client, record, signed):
    notify(client, signed(order_id="FOOD_RECURRING_1_1", payhere_amount="2500.00", status_code="-1", status_message="Declined"))
    sub = subscription()
    assert sub["status"] == "payment_failed"
    assert sub["renewal_attempts"] == 1
    assert sub["renewal_history"][-1]["failure_reason"] == "-1 - Declined"


def test_handler_errors_are_still_acknowledged(client, monkeypatch):
    def explode(data):
        raise RuntimeError("reconciliation failed")

    monkeypatch.setattr(payments, "select_handler", lambda data: explode)
    client.app.dependency_overrides[get_notification_verifier] = lambda: (lambda data: True)
    res = notify(client, {"order_id": "ANY", "payhere_amount": "1", "status_code": "2"})
    assert res.status_code == 200
    assert res.json()["success"] is True


def test_verifier_can_be_swapped(client, signed):
    client.app.dependency_overrides[get_notification_verifier] = lambda: (lambda data: False)
    order_id = client.post("/api/create-cart-payment", json={"amount": 300, "customer_data": CUSTOMER}).json()["order_id"]
    res = notify(client, signed(order_id=order_id, payhere_amount="300.00", custom_1="cart_order"))
    assert res.status_code == 400


def test_subscription_queries(client, record, make_user, admin, headers):
    owner = make_user(email="ayesha@example.com")
    stranger = make_user()
    sub_id = record["subscription_id"]

    listing = client.get("/api/food-subscriptions/user/ayesha@example.com", headers=headers(owner)).json()
    assert listing["count"] == 1
    assert client.get("/api/food-subscriptions/user/ayesha@example.com", headers=headers(stranger)).status_code == 403
    assert client.get("/api/food-subscriptions/user/ayesha@example.com", headers=headers(admin)).status_code == 200

    assert client.put(f"/api/food-subscriptions/{sub_id}/cancel-auto-renew", headers=headers(stranger)).status_code == 403
    res = client.put(
        f"/api/food-subscriptions/{sub_id}/cancel-auto-renew", json={"reason": "Moving abroad"}, headers=headers(owner)
    )
    assert res.json()["subscription"]["auto_renew"] is False
    assert subscription()["auto_renewal_cancelled_reason"] == "Moving abroad"
    assert client.put(f"/api/food-subscriptions/{sub_id}/cancel-auto-renew", headers=headers(owner)).status_code == 400

    history = client.get(f"/api/food-subscriptions/{sub_id}/logs", headers=headers(owner)).json()
    assert sorted(entry["action"] for entry in history["data"]) == ["auto_renewal_cancelled", "created"]


def test_subscription_payment_rejects_bad_email(client):
    res = client.post("/api/create-food-subscription-payment", json={
        "amount": 2500,
        "customer_data": {"name": "A B", "email": "x@@y.com", "address": "X"},
    })
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "customer_data.email"


def test_subscription_record_rejects_bad_email(client):
    res = client.post("/api/create-food-subscription-record", json={
        "user_email": "not-an-email",
        "customer_name": "Ayesha Fernando",
        "address": "5 Lake Drive",
        "payhere_order_id": "FOOD_RECURRING_1_1",
    })
    assert res.status_code == 400
    assert database.db["foodsubscription"].count_documents({}) == 0


def test_renewal_extends_only_the_subscription_it_belongs_to(client, signed):
    for order_id, token in (("FOOD_A", "TOK-A"), ("FOOD_B", "TOK-B")):
        client.post("/api/create-food-subscription-record", json={
            "user_email": "ayesha@example.com",
            "customer_name": "Ayesha Fernando",
            "address": "5 Lake Drive",
            "payhere_order_id": order_id,
            "payhere_recurring_token": token,
        })
    first = database.db["foodsubscription"].find_one({"payhere_order_id": "FOOD_A"})
    second = database.db["foodsubscription"].find_one({"payhere_order_id": "FOOD_B"})

    notify(client, signed(order_id="FOOD_A", subscription_id="TOK-A", payhere_amount="2500.00",
                          email="ayesha@example.com"))

    renewed = database.db["foodsubscription"].find_one({"_id": first["_id"]})
    untouched = database.db["foodsubscription"].find_one({"_id": second["_id"]})
    assert renewed["end_date"] == payments.add_month(first["end_date"])
    assert renewed["renewal_history"][-1]["status"] == "success"
    assert untouched["end_date"] == second["end_date"]
    assert untouched["renewal_history"] == second["renewal_history"]


def test_notification_with_non_ascii_signature_is_rejected(client, signed):
    data = signed(order_id="CART_1_1", payhere_amount="100.00", custom_1="cart_order")
    data["md5sig"] = "é" * 32
    res = notify(client, data)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid signature"


def test_notification_json_must_be_an_object(client):
    assert client.post("/api/payhere-notify", json=[{"order_id": "CART_1_1"}]).status_code == 400
    res = client.post("/api/payhere-notify", content=b"{not json", headers={"content-type": "application/json"})
    assert res.status_code == 400
