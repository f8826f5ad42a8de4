"""
PayHere payments: one-time cart checkouts and the recurring food subscription.

Checkout endpoints build the signed payload the frontend posts to the hosted
payment page. The gateway then calls /api/payhere-notify asynchronously; that
is the only place payment state changes, and every subscription transition
is appended to the foodsubscriptionlog collection.
"""
import calendar
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Capability, can, get_current_user
from config import (
    PAYHERE_MERCHANT_ID,
    PAYHERE_MERCHANT_SECRET,
    FOOD_SUBSCRIPTION_AMOUNT,
    FOOD_SUBSCRIPTION_CURRENCY,
    MAX_RENEWAL_ATTEMPTS,
)
from database import db, create_document, oid, serialize_doc, utcnow
from payhere import (
    NotificationVerifier,
    build_payment_payload,
    describe_items,
    format_amount,
    generate_payhere_hash,
    generate_recurring_payhere_hash,
    get_notification_verifier,
    is_configured,
    normalize_phone,
)
from schemas import (
    CartOrder as CartOrderSchema,
    CartOrderItem,
    FoodSubscription as FoodSubscriptionSchema,
    FoodSubscriptionLog,
    RenewalEntry,
)

logger = logging.getLogger("farmmarket.payments")

router = APIRouter(prefix="/api", tags=["payments"])

SUCCESS_STATUS = "2"
RECURRING_MARKER = "food_monthly_recurring"
CART_MARKER = "cart_order"


class CartPaymentItem(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class CartCustomer(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None


class CartPaymentRequest(BaseModel):
    amount: float
    currency: str = "LKR"
    cart_items: List[CartPaymentItem] = []
    customer_data: CartCustomer = CartCustomer()


class SubscriptionCustomer(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None


class FoodSubscriptionPaymentRequest(BaseModel):
    amount: float
    currency: str = "LKR"
    plan_id: str = "food_premium"
    customer_data: SubscriptionCustomer = SubscriptionCustomer()


class FoodSubscriptionRecordRequest(BaseModel):
    user_email: Optional[EmailStr] = None
    customer_name: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    amount: float = FOOD_SUBSCRIPTION_AMOUNT
    currency: str = FOOD_SUBSCRIPTION_CURRENCY
    payment_method: str = "payhere"
    payhere_order_id: Optional[str] = None
    payhere_recurring_token: Optional[str] = None
    enable_auto_renew: bool = True


class CancelAutoRenewRequest(BaseModel):
    reason: Optional[str] = None


# Helpers
def add_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day (Jan 31 -> Feb 28/29)."""
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        logger.warning("unparseable gateway date %r", value)
        return None


def _gateway_order_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.randbelow(1000)}"


def _require_gateway():
    if not is_configured():
        logger.error("PayHere configuration missing")
        raise HTTPException(status_code=500, detail="PayHere configuration invalid")


def _amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _log_subscription(subscription: dict, action: str, details: Dict[str, Any]):
    create_document("foodsubscriptionlog", FoodSubscriptionLog(
        subscription_id=str(subscription["_id"]),
        user_email=subscription["user_email"],
        action=action,
        details=details,
        timestamp=utcnow(),
    ))


def _subscription_summary(subscription: dict) -> dict:
    return serialize_doc({
        "id": subscription["_id"],
        "plan_name": subscription["plan_name"],
        "amount": subscription["amount"],
        "currency": subscription["currency"],
        "next_billing_date": subscription.get("next_billing_date"),
        "auto_renew": subscription["auto_renew"],
    })


def _get_owned_subscription(subscription_id: str, user: dict) -> dict:
    subscription = db["foodsubscription"].find_one({"_id": oid(subscription_id)})
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    if not can(user, Capability.MANAGE_USERS) and subscription["user_email"] != user["email"].lower():
        raise HTTPException(status_code=403, detail="You can only manage your own subscriptions")
    return subscription


def _record_failure(subscription: dict, reason: str, amount: float, payment_id: Optional[str] = None,
                    status: str = "pending_renewal") -> dict:
    now = utcnow()
    attempts = subscription.get("renewal_attempts", 0) + 1
    max_attempts = subscription.get("max_renewal_attempts", MAX_RENEWAL_ATTEMPTS)
    exhausted = attempts >= max_attempts
    updates: Dict[str, Any] = {
        "renewal_attempts": attempts,
        "payment_failure": True,
        "payment_failure_reason": reason,
        "last_payment_failure_date": now,
        "status": "cancelled" if exhausted else status,
        "updated_at": now,
    }
    if exhausted:
        updates.update({
            "auto_renew": False,
            "next_billing_date": None,
            "auto_renewal_cancelled_date": now,
            "auto_renewal_cancelled_reason": "Maximum renewal attempts reached",
        })
    entry = RenewalEntry(
        renewal_date=now,
        amount=amount,
        status="failed",
        payment_id=payment_id,
        failure_reason=reason,
        attempt=attempts,
        payhere_token=subscription.get("payhere_recurring_token"),
    )
    updated = db["foodsubscription"].find_one_and_update(
        {"_id": subscription["_id"]},
        {"$set": updates, "$push": {"renewal_history": entry.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    _log_subscription(updated, "failed", {
        "payment_id": payment_id,
        "amount": amount,
        "currency": updated["currency"],
        "reason": reason,
        "attempt": attempts,
    })
    if exhausted:
        _log_subscription(updated, "auto_renewal_cancelled", {"reason": "Maximum renewal attempts reached"})
        logger.warning("subscription %s cancelled after %d failed attempts", updated["_id"], attempts)
    return updated


# Notification handlers
def handle_cart_payment(data: Dict[str, str]):
    order = db["cartorder"].find_one({"payhere_order_id": data.get("order_id")})
    if not order:
        logger.error("cart order not found for notification order=%s", data.get("order_id"))
        return
    if data.get("status_code") == SUCCESS_STATUS:
        updates = {"payment_status": "completed", "order_status": "confirmed", "payhere_payment_id": data.get("payment_id")}
    else:
        updates = {"payment_status": "failed", "order_status": "cancelled"}
    updates["updated_at"] = utcnow()
    db["cartorder"].update_one({"_id": order["_id"]}, {"$set": updates})
    logger.info("cart order %s payment %s", order["payhere_order_id"], updates["payment_status"])


def handle_initial_subscription_payment(data: Dict[str, str]):
    order_id = data.get("order_id")
    payment_id = data.get("payment_id")
    token = data.get("recurring_token") or data.get("subscription_id") or None
    is_recurring = data.get("custom_2") == RECURRING_MARKER
    next_occurrence = _parse_date(data.get("next_occurrence_date"))
    now = utcnow()

    existing = db["foodsubscription"].find_one({"payhere_order_id": order_id})
    if existing:
        if is_recurring and token:
            db["foodsubscription"].update_one({"_id": existing["_id"]}, {"$set": {
                "payhere_recurring_token": token,
                "payhere_payment_id": payment_id,
                "auto_renew": True,
                "status": "active",
                "next_billing_date": next_occurrence or now + timedelta(days=30),
                "updated_at": now,
            }})
            logger.info("subscription %s linked to recurring token", existing["_id"])
        return

    amount = _amount(data.get("payhere_amount"))
    end_date = add_month(now)
    auto_renew = bool(is_recurring and token)
    subscription = FoodSubscriptionSchema(
        user_email=(data.get("email") or "customer@example.com").strip().lower(),
        customer_name="Food Subscriber",
        phone_number=normalize_phone(None),
        address="Colombo, Sri Lanka",
        plan_id=(data.get("custom_1") or "").replace("plan_", "") or "food_premium",
        amount=amount,
        currency=data.get("payhere_currency") or FOOD_SUBSCRIPTION_CURRENCY,
        payhere_order_id=order_id,
        payhere_payment_id=payment_id,
        payhere_recurring_token=token,
        auto_renew=auto_renew,
        max_renewal_attempts=MAX_RENEWAL_ATTEMPTS,
        start_date=now,
        end_date=end_date,
        next_billing_date=(next_occurrence or end_date) if auto_renew else None,
        renewal_history=[RenewalEntry(
            renewal_date=now, amount=amount, status="success", payment_id=payment_id, attempt=1, payhere_token=token,
        )],
    )
    new_id = create_document("foodsubscription", subscription)
    created = db["foodsubscription"].find_one({"_id": oid(new_id)})
    _log_subscription(created, "created", {
        "payment_id": payment_id,
        "amount": amount,
        "currency": created["currency"],
        "auto_renewal": auto_renew,
        "recurring_token": bool(token),
    })
    logger.info("subscription %s created auto_renew=%s", new_id, auto_renew)


def handle_recurring_payment(data: Dict[str, str]):
    token = data.get("subscription_id")
    email = (data.get("email") or "").strip().lower()
    if token:
        query = {"payhere_recurring_token": token}
    elif email:
        query = {"user_email": email}
    else:
        logger.error("recurring notification without subscription id or email")
        return
    query["auto_renew"] = True
    subscription = db["foodsubscription"].find_one(query, sort=[("created_at", DESCENDING)])
    if not subscription:
        logger.warning("no auto-renewing subscription for recurring notification token=%s", token)
        return

    payment_id = data.get("payment_id")
    if payment_id and any(e.get("payment_id") == payment_id for e in subscription.get("renewal_history", [])):
        logger.info("duplicate notification payment=%s for subscription %s", payment_id, subscription["_id"])
        return
    amount = _amount(data.get("payhere_amount"))
    if data.get("status_code") != SUCCESS_STATUS:
        _record_failure(subscription, f"Payment failed with status code: {data.get('status_code')}", amount, payment_id)
        return

    now = utcnow()
    new_end = add_month(subscription["end_date"])
    entry = RenewalEntry(
        renewal_date=now,
        amount=amount,
        status="success",
        payment_id=payment_id,
        attempt=1,
        payhere_token=subscription.get("payhere_recurring_token"),
    )
    updated = db["foodsubscription"].find_one_and_update(
        {"_id": subscription["_id"]},
        {
            "$set": {
                "status": "active",
                "end_date": new_end,
                "next_billing_date": _parse_date(data.get("next_occurrence_date")) or new_end,
                "renewal_attempts": 0,
                "payment_failure": False,
                "updated_at": now,
            },
            "$push": {"renewal_history": entry.model_dump()},
        },
        return_document=ReturnDocument.AFTER,
    )
    _log_subscription(updated, "renewed", {"payment_id": payment_id, "amount": amount, "currency": updated["currency"]})
    logger.info("subscription %s renewed until %s", updated["_id"], new_end.date())


def handle_failed_subscription_payment(data: Dict[str, str]):
    subscription = db["foodsubscription"].find_one({"payhere_order_id": data.get("order_id")})
    if not subscription:
        logger.info("failed payment for unknown subscription order=%s", data.get("order_id"))
        return
    reason = f"{data.get('status_code')} - {data.get('status_message', '')}".strip()
    _record_failure(subscription, reason, subscription["amount"], status="payment_failed")


def select_handler(data: Dict[str, str]) -> Callable[[Dict[str, str]], None]:
    if data.get("custom_1") == CART_MARKER or (data.get("order_id") or "").startswith("CART_"):
        return handle_cart_payment
    token = data.get("subscription_id")
    if token and db["foodsubscription"].find_one({"payhere_recurring_token": token}, {"_id": 1}):
        return handle_recurring_payment
    if data.get("status_code") == SUCCESS_STATUS:
        return handle_initial_subscription_payment
    return handle_failed_subscription_payment


async def _notification_payload(request: Request) -> Dict[str, str]:
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            raw = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Notification body must be an object")
        if not isinstance(raw, dict):
            raise HTTPException(status_code=400, detail="Notification body must be an object")
    else:
        raw = dict(await request.form())
    return {k: "" if v is None else str(v) for k, v in raw.items()}


# Checkout
@router.post("/create-cart-payment")
def create_cart_payment(req: CartPaymentRequest):
    _require_gateway()
    if req.amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")
    customer = req.customer_data
    if not customer.first_name or not customer.last_name or not customer.email or not customer.address:
        raise HTTPException(status_code=400, detail="Customer information is required")

    order_id = _gateway_order_id("CART")
    email = customer.email.strip().lower()
    phone = normalize_phone(customer.phone)
    currency = req.currency.upper()
    items = [i.model_dump() for i in req.cart_items]
    payload = build_payment_payload(
        order_id,
        req.amount,
        currency,
        {
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "email": email,
            "phone": phone,
            "address": customer.address.strip(),
            "city": customer.city,
        },
        describe_items(items),
        generate_payhere_hash(PAYHERE_MERCHANT_ID, order_id, req.amount, currency, PAYHERE_MERCHANT_SECRET),
        custom_1=CART_MARKER,
        custom_2=f"customer_{email}",
    )

    cart_order = CartOrderSchema(
        customer_email=email,
        customer_name=f"{customer.first_name} {customer.last_name}".strip(),
        phone_number=phone,
        address=customer.address.strip(),
        city=customer.city or "Colombo",
        order_id=order_id,
        payhere_order_id=order_id,
        items=[CartOrderItem(total_price=i["price"] * i["quantity"], **i) for i in items],
        subtotal=req.amount,
        total_amount=req.amount,
        currency=currency,
    )
    create_document("cartorder", cart_order)
    logger.info("cart payment created order=%s amount=%s items=%d", order_id, format_amount(req.amount), len(items))
    return {
        "success": True,
        "order_id": order_id,
        "payment_data": payload,
        "amount": req.amount,
        "currency": currency,
        "message": "One-time cart payment created successfully",
    }


@router.post("/create-food-subscription-payment")
def create_food_subscription_payment(req: FoodSubscriptionPaymentRequest):
    _require_gateway()
    if req.amount != FOOD_SUBSCRIPTION_AMOUNT:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid amount. Food subscription is fixed at LKR {FOOD_SUBSCRIPTION_AMOUNT} per month",
        )
    customer = req.customer_data
    if not customer.name or not customer.email or not customer.address:
        raise HTTPException(status_code=400, detail="Customer name, email, and delivery address are required")

    order_id = _gateway_order_id("FOOD_RECURRING")
    name_parts = customer.name.split()
    currency = req.currency.upper()
    payload = build_payment_payload(
        order_id,
        FOOD_SUBSCRIPTION_AMOUNT,
        currency,
        {
            "first_name": name_parts[0] if name_parts else "Customer",
            "last_name": " ".join(name_parts[1:]) or "User",
            "email": customer.email.strip().lower(),
            "phone": normalize_phone(customer.phone_number),
            "address": customer.address.strip(),
        },
        "Premium Food Subscription - Monthly Auto-Renewal",
        generate_recurring_payhere_hash(PAYHERE_MERCHANT_ID, order_id, FOOD_SUBSCRIPTION_AMOUNT, currency, PAYHERE_MERCHANT_SECRET),
        custom_1=f"plan_{req.plan_id}",
        custom_2=RECURRING_MARKER,
        recurrence="1 Month",
        duration="Forever",
        startup_fee="0.00",
    )
    logger.info("subscription payment prepared order=%s", order_id)
    return {
        "success": True,
        "order_id": order_id,
        "payment_data": payload,
        "amount": FOOD_SUBSCRIPTION_AMOUNT,
        "currency": currency,
        "recurring": True,
        "message": "Food subscription recurring payment created successfully",
    }


@router.post("/create-food-subscription-record")
def create_food_subscription_record(req: FoodSubscriptionRecordRequest):
    if not req.user_email or not req.customer_name or not req.address:
        raise HTTPException(status_code=400, detail="User email, customer name, and address are required")
    if not req.payhere_order_id:
        raise HTTPException(status_code=400, detail="payhere_order_id is required")

    existing = db["foodsubscription"].find_one({"payhere_order_id": req.payhere_order_id})
    if existing:
        return {
            "success": True,
            "subscription_id": str(existing["_id"]),
            "message": "Subscription record already exists",
            "subscription": _subscription_summary(existing),
        }

    now = utcnow()
    end_date = add_month(now)
    subscription = FoodSubscriptionSchema(
        user_email=req.user_email.strip().lower(),
        customer_name=req.customer_name.strip(),
        phone_number=(req.phone_number or "").strip() or normalize_phone(None),
        address=req.address.strip(),
        amount=req.amount,
        currency=req.currency.upper(),
        payment_method=req.payment_method,
        payhere_order_id=req.payhere_order_id,
        payhere_recurring_token=req.payhere_recurring_token,
        auto_renew=req.enable_auto_renew,
        max_renewal_attempts=MAX_RENEWAL_ATTEMPTS,
        start_date=now,
        end_date=end_date,
        next_billing_date=end_date if req.enable_auto_renew else None,
        renewal_history=[RenewalEntry(
            renewal_date=now,
            amount=req.amount,
            status="success",
            payment_id=req.payhere_order_id,
            payhere_token=req.payhere_recurring_token,
        )],
    )
    try:
        new_id = create_document("foodsubscription", subscription)
    except DuplicateKeyError:
        existing = db["foodsubscription"].find_one({"payhere_order_id": req.payhere_order_id})
        return {
            "success": True,
            "subscription_id": str(existing["_id"]),
            "message": "Subscription record already exists",
            "subscription": _subscription_summary(existing),
        }
    created = db["foodsubscription"].find_one({"_id": oid(new_id)})
    _log_subscription(created, "created", {
        "payment_id": req.payhere_order_id,
        "amount": req.amount,
        "currency": created["currency"],
        "auto_renewal": req.enable_auto_renew,
        "recurring_token": bool(req.payhere_recurring_token),
    })
    logger.info("subscription record %s created for %s", new_id, created["user_email"])
    return {
        "success": True,
        "subscription_id": new_id,
        "message": "Food subscription record created successfully",
        "subscription": _subscription_summary(created),
    }


# Gateway callback
@router.post("/payhere-notify")
async def payhere_notify(request: Request, verify: NotificationVerifier = Depends(get_notification_verifier)):
    data = await _notification_payload(request)
    if not verify(data):
        logger.warning("rejected PayHere notification with bad signature order=%s", data.get("order_id"))
        raise HTTPException(status_code=400, detail="Invalid signature")

    handler = await run_in_threadpool(select_handler, data)
    logger.info("PayHere notification order=%s status=%s -> %s", data.get("order_id"), data.get("status_code"), handler.__name__)
    try:
        await run_in_threadpool(handler, data)
    except Exception:
        # The gateway only needs an acknowledgement; reconciliation failures stay in the log.
        logger.exception("PayHere notification handling failed order=%s", data.get("order_id"))
    return {"success": True, "message": "Notification received"}


# Queries
@router.get("/food-subscriptions/user/{email}")
def list_user_subscriptions(email: str, user=Depends(get_current_user)):
    email = email.strip().lower()
    if not can(user, Capability.MANAGE_USERS) and email != user["email"].lower():
        raise HTTPException(status_code=403, detail="You can only view your own subscriptions")
    subscriptions = db["foodsubscription"].find({"user_email": email}).sort("created_at", DESCENDING)
    data = [serialize_doc(s) for s in subscriptions]
    return {"success": True, "count": len(data), "data": data}


@router.get("/cart-orders/{order_id}")
def get_cart_order_status(order_id: str):
    order = db["cartorder"].find_one({"payhere_order_id": order_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {
        "success": True,
        "order": serialize_doc({
            "order_id": order["order_id"],
            "payment_status": order["payment_status"],
            "order_status": order["order_status"],
            "total_amount": order["total_amount"],
            "currency": order["currency"],
            "payhere_payment_id": order.get("payhere_payment_id"),
            "updated_at": order.get("updated_at"),
        }),
    }


@router.put("/food-subscriptions/{subscription_id}/cancel-auto-renew")
def cancel_auto_renew(subscription_id: str, req: Optional[CancelAutoRenewRequest] = None, user=Depends(get_current_user)):
    subscription = _get_owned_subscription(subscription_id, user)
    if not subscription.get("auto_renew"):
        raise HTTPException(status_code=400, detail="Auto-renewal is already disabled for this subscription")
    reason = (req.reason if req and req.reason else "") or "Cancelled by user"
    now = utcnow()
    updated = db["foodsubscription"].find_one_and_update(
        {"_id": subscription["_id"]},
        {"$set": {
            "auto_renew": False,
            "next_billing_date": None,
            "auto_renewal_cancelled_date": now,
            "auto_renewal_cancelled_reason": reason,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    _log_subscription(updated, "auto_renewal_cancelled", {"reason": reason, "cancelled_by": str(user["_id"])})
    logger.info("auto-renewal cancelled subscription=%s by=%s", subscription_id, user["_id"])
    return {
        "success": True,
        "message": "Auto-renewal cancelled. Your subscription stays active until the end of the current period.",
        "subscription": _subscription_summary(updated),
    }


@router.get("/food-subscriptions/{subscription_id}/logs")
def get_subscription_logs(subscription_id: str, user=Depends(get_current_user)):
    subscription = _get_owned_subscription(subscription_id, user)
    logs = db["foodsubscriptionlog"].find({"subscription_id": str(subscription["_id"])}).sort("timestamp", DESCENDING)
    data = [serialize_doc(entry) for entry in logs]
    return {"success": True, "count": len(data), "data": data}
