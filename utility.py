import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List

from fastapi import APIRouter, Depends, Query

from auth import Capability, get_current_user, require
from database import db, serialize_doc, utcnow

logger = logging.getLogger("farmmarket.utility")

router = APIRouter(prefix="/api/utility", tags=["utility"])

LOW_STOCK_THRESHOLD = 10
URGENT_DAYS = 2


def days_until(expiry: datetime, now: datetime) -> int:
    return math.ceil((expiry - now).total_seconds() / 86400)


def _expiring(now: datetime, days: int) -> List[dict]:
    return list(
        db["product"].find({"expiry_date": {"$gte": now, "$lte": now + timedelta(days=days)}}).sort("expiry_date", 1)
    )


def _expiry_view(p: dict, now: datetime) -> dict:
    return serialize_doc({
        "id": p["_id"],
        "product_id": p["product_id"],
        "name": p["product_name"],
        "expiry_date": p["expiry_date"],
        "stock": p["quantity_in_stock"],
        "price": p["price"],
        "owner": p.get("owner"),
        "days_until_expiry": days_until(p["expiry_date"], now),
    })


@router.delete("/cleanup-expired")
def cleanup_expired(admin=Depends(require(Capability.RUN_MAINTENANCE, "Admin access required"))):
    now = utcnow()
    expired = list(db["product"].find({"expiry_date": {"$lt": now}}, {"product_name": 1, "expiry_date": 1}))
    if not expired:
        return {"message": "No expired products found", "cleaned": 0}

    result = db["product"].delete_many({"_id": {"$in": [p["_id"] for p in expired]}})
    logger.info("cleanup removed %d expired products by=%s", result.deleted_count, admin["_id"])
    return {
        "message": f"Successfully cleaned up {result.deleted_count} expired products",
        "cleaned": result.deleted_count,
        "expired_products": [
            serialize_doc({"id": p["_id"], "name": p["product_name"], "expiry_date": p["expiry_date"]})
            for p in expired
        ],
    }


@router.get("/expiring-soon")
def expiring_soon(days: int = Query(7, ge=1), user=Depends(get_current_user)):
    now = utcnow()
    products = _expiring(now, days)
    return {
        "message": f"Found {len(products)} products expiring within {days} days",
        "days_checked": days,
        "products": [_expiry_view(p, now) for p in products],
    }


@router.get("/expiring-5-days")
def expiring_within_5_days(user=Depends(get_current_user)):
    now = utcnow()
    products = [_expiry_view(p, now) for p in _expiring(now, 5)]
    grouped: Dict[str, List[dict]] = {}
    for p in products:
        p["urgency"] = "HIGH" if p["days_until_expiry"] <= URGENT_DAYS else "MEDIUM"
        grouped.setdefault(str(p["days_until_expiry"]), []).append(p)
    return {
        "message": f"Found {len(products)} products expiring within 5 days",
        "total_products": len(products),
        "urgent_alert": sum(1 for p in products if p["urgency"] == "HIGH"),
        "grouped_by_days": grouped,
        "products": products,
    }


@router.get("/health")
def system_health(user=Depends(get_current_user)):
    now = utcnow()
    total = db["product"].count_documents({})
    expired = db["product"].count_documents({"expiry_date": {"$lt": now}})
    expiring = db["product"].count_documents({"expiry_date": {"$gte": now, "$lte": now + timedelta(days=7)}})
    low_stock = db["product"].count_documents({"quantity_in_stock": {"$lt": LOW_STOCK_THRESHOLD}})
    if expired:
        status = "Needs Cleanup"
    elif expiring:
        status = "Warning - Products Expiring Soon"
    else:
        status = "Good"
    return {
        "system_health": {
            "total_products": total,
            "expired_products": expired,
            "expiring_within_7_days": expiring,
            "low_stock": low_stock,
            "health_status": status,
            "last_checked": now.isoformat(),
        }
    }
