import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import (
    create_token,
    get_current_user,
    get_optional_user,
    hash_password,
    require_admin,
    verify_password,
    can,
    Capability,
)
from database import db, create_document, oid, utcnow
from schemas import User as UserSchema, UserType, DEFAULT_PROFILE_PICTURE

logger = logging.getLogger("farmmarket.users")

router = APIRouter(prefix="/api/users", tags=["users"])


# Request models
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    type: UserType = "customer"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    farm_size: str = ""
    experience: str = ""
    specializations: List[str] = []
    bio: str = ""


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    farm_size: Optional[str] = None
    experience: Optional[str] = None
    specializations: Optional[List[str]] = None
    bio: Optional[str] = None
    profile_picture: Optional[str] = None


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "email": user.get("email"),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "name": user.get("name"),
        "type": user.get("type"),
        "phone": user.get("phone"),
        "farm_name": user.get("farm_name"),
        "farm_location": user.get("farm_location"),
        "farm_size": user.get("farm_size", ""),
        "experience": user.get("experience", ""),
        "specializations": user.get("specializations", []),
        "bio": user.get("bio", ""),
        "profile_picture": user.get("profile_picture") or DEFAULT_PROFILE_PICTURE,
        "is_blocked": user.get("is_blocked", False),
        "subscription_paid": user.get("subscription_paid", False),
        "farmer_status": user.get("farmer_status", ""),
    }


def _get_farmer(farmer_id: str) -> dict:
    farmer = db["user"].find_one({"_id": oid(farmer_id)})
    if not farmer or farmer.get("type") != "farmer":
        raise HTTPException(status_code=404, detail="Farmer not found")
    return farmer


# Auth
@router.post("/register", status_code=201)
def register(req: RegisterRequest, caller: Optional[dict] = Depends(get_optional_user)):
    if req.type == "admin" and not can(caller, Capability.MANAGE_USERS):
        raise HTTPException(status_code=403, detail="Only admins can create admin accounts")

    if db["user"].find_one({"email": req.email}):
        raise HTTPException(status_code=409, detail="User already exists")

    if req.type == "farmer":
        missing = [f for f in ("name", "phone", "farm_name", "farm_location") if not getattr(req, f)]
        if missing:
            raise HTTPException(status_code=400, detail="Missing required farmer fields: " + ", ".join(missing))
        user = UserSchema(
            email=req.email,
            password_hash=hash_password(req.password),
            type="farmer",
            name=req.name,
            phone=req.phone,
            farm_name=req.farm_name,
            farm_location=req.farm_location,
            farm_size=req.farm_size,
            experience=req.experience,
            specializations=req.specializations,
            bio=req.bio,
            farmer_status="pending_payment",
        )
    else:
        if not req.first_name or not req.last_name:
            raise HTTPException(status_code=400, detail="First name and last name are required")
        user = UserSchema(
            email=req.email,
            password_hash=hash_password(req.password),
            type=req.type,
            first_name=req.first_name,
            last_name=req.last_name,
            phone=req.phone,
        )

    try:
        new_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    created = db["user"].find_one({"_id": oid(new_id)})
    logger.info("registered user=%s type=%s", new_id, created["type"])
    return {"message": "User registered successfully", "token": create_token(created), "user": public_user(created)}


@router.post("/login")
def login(req: LoginRequest):
    user = db["user"].find_one({"email": req.email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    if user.get("is_blocked"):
        raise HTTPException(status_code=403, detail="Your account is blocked")
    if not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect password")
    return {"message": "Login successful", "token": create_token(user), "user": public_user(user)}


@router.post("/logout")
def logout():
    # Tokens are stateless; the client just drops it.
    return {"message": "Logout successful"}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return public_user(user)


@router.put("/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(get_current_user)):
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if "farm_size" in updates and updates["farm_size"] not in ("small", "medium", "large", ""):
        raise HTTPException(status_code=400, detail="Invalid farm size")
    if "experience" in updates and updates["experience"] not in ("beginner", "intermediate", "experienced", ""):
        raise HTTPException(status_code=400, detail="Invalid experience level")
    updates["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "Profile updated successfully", "user": public_user(updated)}


# Farmer subscription & approval workflow
@router.post("/farmer/pay-subscription")
def pay_farmer_subscription(user=Depends(get_current_user)):
    if user.get("type") != "farmer":
        raise HTTPException(status_code=403, detail="Only farmers can pay subscription")
    updates = {"subscription_paid": True, "updated_at": utcnow()}
    if user.get("farmer_status") in (None, "", "pending_payment"):
        updates["farmer_status"] = "pending_review"
    farmer = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    logger.info("farmer subscription paid user=%s status=%s", farmer["_id"], farmer["farmer_status"])
    return {
        "message": "Subscription payment recorded. Awaiting admin approval.",
        "subscription_paid": farmer["subscription_paid"],
        "farmer_status": farmer["farmer_status"],
    }


@router.get("/admin/farmers/pending")
def list_pending_farmers(admin=Depends(require_admin)):
    farmers = db["user"].find({"type": "farmer", "farmer_status": "pending_review", "subscription_paid": True})
    return [
        {
            "id": str(f["_id"]),
            "name": f.get("name"),
            "email": f.get("email"),
            "farm_name": f.get("farm_name"),
            "farm_location": f.get("farm_location"),
            "subscription_paid": f.get("subscription_paid", False),
            "farmer_status": f.get("farmer_status", ""),
            "created_at": f["created_at"].isoformat() if f.get("created_at") else None,
        }
        for f in farmers
    ]


@router.post("/admin/farmers/{farmer_id}/approve")
def approve_farmer(farmer_id: str, admin=Depends(require_admin)):
    farmer = _get_farmer(farmer_id)
    if not farmer.get("subscription_paid"):
        raise HTTPException(status_code=400, detail="Farmer has not paid subscription")
    db["user"].update_one({"_id": farmer["_id"]}, {"$set": {"farmer_status": "approved", "updated_at": utcnow()}})
    logger.info("farmer approved user=%s by=%s", farmer_id, admin["_id"])
    return {"message": "Farmer approved", "id": farmer_id, "farmer_status": "approved"}


@router.post("/admin/farmers/{farmer_id}/decline")
def decline_farmer(farmer_id: str, req: Optional[DeclineRequest] = None, admin=Depends(require_admin)):
    farmer = _get_farmer(farmer_id)
    db["user"].update_one({"_id": farmer["_id"]}, {"$set": {"farmer_status": "declined", "updated_at": utcnow()}})
    reason = req.reason if req and req.reason else ""
    logger.info("farmer declined user=%s by=%s reason=%s", farmer_id, admin["_id"], reason)
    return {"message": "Farmer declined", "id": farmer_id, "farmer_status": "declined", "reason": reason}


def _set_blocked(target_id: str, blocked: bool, admin: dict) -> dict:
    target = db["user"].find_one({"_id": oid(target_id)})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="You cannot block your own account")
    db["user"].update_one({"_id": target["_id"]}, {"$set": {"is_blocked": blocked, "updated_at": utcnow()}})
    logger.info("user %s blocked=%s by=%s", target_id, blocked, admin["_id"])
    return {"message": "User blocked" if blocked else "User unblocked", "id": target_id, "is_blocked": blocked}


@router.post("/admin/users/{target_id}/block")
def block_user(target_id: str, admin=Depends(require_admin)):
    return _set_blocked(target_id, True, admin)


@router.post("/admin/users/{target_id}/unblock")
def unblock_user(target_id: str, admin=Depends(require_admin)):
    return _set_blocked(target_id, False, admin)
