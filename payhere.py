"""
PayHere hosted-checkout helpers.

Checkout hash:      upper(md5(merchant_id + order_id + amount + currency + upper(md5(secret))))
Notification hash:  same, with status_code after the currency.

Amounts are always rendered with two decimals (2500 -> "2500.00").
"""
import hashlib
import hmac
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from config import (
    PAYHERE_MERCHANT_ID,
    PAYHERE_MERCHANT_SECRET,
    PAYHERE_MODE,
    PAYHERE_RETURN_URL,
    PAYHERE_CANCEL_URL,
    PAYHERE_NOTIFY_URL,
)

logger = logging.getLogger("farmmarket.payhere")

DEFAULT_PHONE = "0771234567"


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(amount: Any) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _checkout_hash(merchant_id: Any, order_id: Any, amount: Any, currency: Any, merchant_secret: Any) -> str:
    # Both checkout paths hash the same normalised fields.
    return _md5_upper(
        f"{str(merchant_id).strip()}{str(order_id).strip()}{format_amount(amount)}"
        f"{str(currency).strip().upper()}{_md5_upper(str(merchant_secret).strip())}"
    )


def generate_payhere_hash(merchant_id: str, order_id: str, amount: Any, currency: str, merchant_secret: str) -> str:
    return _checkout_hash(merchant_id, order_id, amount, currency, merchant_secret)


def generate_recurring_payhere_hash(merchant_id: str, order_id: str, amount: Any, currency: str, merchant_secret: str) -> str:
    return _checkout_hash(merchant_id, order_id, amount, currency, merchant_secret)


def verify_payhere_hash(data: Dict[str, Any], merchant_secret: str) -> bool:
    md5sig = data.get("md5sig")
    if not md5sig:
        return False
    try:
        amount = format_amount(data.get("payhere_amount"))
    except (InvalidOperation, TypeError, ValueError):
        return False
    local = _md5_upper(
        f"{data.get('merchant_id', '')}{data.get('order_id', '')}{amount}"
        f"{data.get('payhere_currency', '')}{data.get('status_code', '')}{_md5_upper(merchant_secret)}"
    )
    return hmac.compare_digest(local.encode("utf-8"), str(md5sig).upper().encode("utf-8"))


class PayHereVerifier:
    """Checks that a notification was signed with our merchant secret."""

    def __init__(self, merchant_secret: str):
        self.merchant_secret = merchant_secret

    def __call__(self, data: Dict[str, Any]) -> bool:
        return verify_payhere_hash(data, self.merchant_secret)


NotificationVerifier = Callable[[Dict[str, Any]], bool]


def get_notification_verifier() -> NotificationVerifier:
    return PayHereVerifier(PAYHERE_MERCHANT_SECRET)


def is_configured() -> bool:
    return bool(PAYHERE_MERCHANT_ID and PAYHERE_MERCHANT_SECRET)


def validate_config() -> bool:
    issues = []
    if not PAYHERE_MERCHANT_ID:
        issues.append("Missing PAYHERE_MERCHANT_ID")
    if not PAYHERE_MERCHANT_SECRET:
        issues.append("Missing PAYHERE_MERCHANT_SECRET")
    if issues:
        logger.error("PayHere configuration issues: %s", ", ".join(issues))
        return False
    logger.info("PayHere configured mode=%s merchant=%s", PAYHERE_MODE, PAYHERE_MERCHANT_ID)
    return True


def normalize_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", (phone or "").strip() or DEFAULT_PHONE)
    if digits.startswith("94"):
        return "0" + digits[2:]
    if not digits.startswith("0"):
        return "0" + digits
    return digits


def describe_items(items: List[Dict[str, Any]]) -> str:
    if not items:
        return "Cart Items"
    text = ", ".join(f"{i.get('product_name')} (x{i.get('quantity')})" for i in items)
    return text[:97] + "..." if len(text) > 100 else text


def build_payment_payload(order_id: str, amount: Any, currency: str, customer: Dict[str, str], items: str,
                          hash_value: str, **extra) -> Dict[str, Any]:
    payload = {
        "sandbox": PAYHERE_MODE == "sandbox",
        "merchant_id": PAYHERE_MERCHANT_ID,
        "return_url": f"{PAYHERE_RETURN_URL}?order_id={order_id}",
        "cancel_url": PAYHERE_CANCEL_URL,
        "notify_url": PAYHERE_NOTIFY_URL,
        "order_id": order_id,
        "items": items,
        "currency": currency.upper(),
        "amount": format_amount(amount),
        "first_name": customer["first_name"],
        "last_name": customer["last_name"],
        "email": customer["email"],
        "phone": customer["phone"],
        "address": customer["address"],
        "city": customer.get("city") or "Colombo",
        "country": "Sri Lanka",
        "hash": hash_value,
    }
    payload.update(extra)
    return payload
