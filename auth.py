import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError
from passlib.context import CryptContext

from config import JWT_SECRET, JWT_ALG, JWT_EXPIRE_HOURS
from database import db

logger = logging.getLogger("farmmarket.auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class Capability(str, Enum):
    SHOP = "shop"
    VIEW_OWN_ORDERS = "view_own_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    MANAGE_ORDERS = "manage_orders"
    SELL_PRODUCTS = "sell_products"
    MANAGE_ANY_PRODUCT = "manage_any_product"
    VIEW_ALL_PRODUCTS = "view_all_products"
    FULFIL_ORDER_ITEMS = "fulfil_order_items"
    MANAGE_USERS = "manage_users"
    MANAGE_DELIVERY = "manage_delivery"
    RUN_MAINTENANCE = "run_maintenance"


ROLE_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "customer": frozenset({
        Capability.SHOP,
        Capability.VIEW_OWN_ORDERS,
    }),
    "farmer": frozenset({
        Capability.SHOP,
        Capability.SELL_PRODUCTS,
        Capability.FULFIL_ORDER_ITEMS,
    }),
    "admin": frozenset({
        Capability.SHOP,
        Capability.VIEW_ALL_ORDERS,
        Capability.MANAGE_ORDERS,
        Capability.MANAGE_ANY_PRODUCT,
        Capability.VIEW_ALL_PRODUCTS,
        Capability.MANAGE_USERS,
        Capability.MANAGE_DELIVERY,
        Capability.RUN_MAINTENANCE,
    }),
}


def can(user: Optional[dict], capability: Capability) -> bool:
    if not user:
        return False
    return capability in ROLE_CAPABILITIES.get(user.get("type"), frozenset())


def user_id(user: dict) -> str:
    return str(user["_id"])


# Passwords
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash or "")


# Tokens
def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "type": user.get("type"),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "name": user.get("name"),
        "farm_name": user.get("farm_name"),
        "subscription_paid": user.get("subscription_paid", False),
        "farmer_status": user.get("farmer_status", ""),
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def _user_from_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid token")
    user_id_claim = payload.get("sub")
    if not user_id_claim or not ObjectId.is_valid(user_id_claim):
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id_claim)})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    if user.get("is_blocked"):
        raise HTTPException(status_code=403, detail="Your account is blocked")
    return user


def get_current_user(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")
    token = authorization.replace("Bearer ", "").strip()
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")
    return _user_from_token(token)


def get_optional_user(authorization: Optional[str] = Header(None)):
    """Like get_current_user, but anonymous requests get None instead of a 401."""
    if not authorization:
        return None
    token = authorization.replace("Bearer ", "").strip()
    if not token:
        return None
    return _user_from_token(token)


def require(capability: Capability, message: str = "You are not authorized to perform this action"):
    def dependency(user=Depends(get_current_user)):
        if not can(user, capability):
            logger.info("denied %s to user=%s type=%s", capability.value, user.get("_id"), user.get("type"))
            raise HTTPException(status_code=403, detail=message)
        return user
    return dependency


require_admin = require(Capability.MANAGE_USERS, "Admin access required")
