import logging
import secrets
import string
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import Capability, can, get_current_user, get_optional_user, require, user_id
from database import db, create_document, oid, to_naive_utc, utcnow
from schemas import Product as ProductSchema

logger = logging.getLogger("farmmarket.products")

router = APIRouter(prefix="/api/products", tags=["products"])

_ID_ALPHABET = string.ascii_lowercase + string.digits


class ProductCreateRequest(BaseModel):
    product_name: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    quantity_in_stock: Optional[int] = None
    expiry_date: Optional[datetime] = None
    images: List[str] = []
    alt_names: List[str] = []


class ProductUpdateRequest(BaseModel):
    product_name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    quantity_in_stock: Optional[int] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    images: Optional[List[str]] = None
    alt_names: Optional[List[str]] = None


class ReduceStockRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


def generate_product_id() -> str:
    return "product-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def is_expired(product: dict, now: Optional[datetime] = None) -> bool:
    expiry = product.get("expiry_date")
    return bool(expiry) and expiry < (now or utcnow())


def map_product(p: dict, owners: Optional[Dict[str, dict]] = None) -> dict:
    owner_id = p.get("owner")
    owner = (owners or {}).get(owner_id)
    if is_expired(p):
        status = "expired"
    elif p.get("quantity_in_stock", 0) > 0:
        status = "active"
    else:
        status = "out_of_stock"
    images = p.get("images") or []
    return {
        "id": str(p["_id"]),
        "product_id": p["product_id"],
        "name": p["product_name"],
        "description": p.get("description"),
        "price": p["price"],
        "last_price": p.get("last_price"),
        "stock": p["quantity_in_stock"],
        "expiry_date": p["expiry_date"].isoformat() if p.get("expiry_date") else None,
        "images": images,
        "image": images[0] if images else None,
        "owner": {"id": owner_id, "name": owner.get("name") or owner.get("first_name"), "type": owner.get("type")} if owner else owner_id,
        "created_at": p["created_at"].isoformat() if p.get("created_at") else None,
        "updated_at": p["updated_at"].isoformat() if p.get("updated_at") else None,
        "status": status,
    }


def _owners_for(products: List[dict]) -> Dict[str, dict]:
    ids = {p.get("owner") for p in products if p.get("owner")}
    object_ids = [oid(i) for i in ids]
    return {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": object_ids}}, {"name": 1, "first_name": 1, "type": 1})}


def find_product(product_id: str) -> Optional[dict]:
    return db["product"].find_one({"product_id": product_id})


def reserve_stock(product_id: str, quantity: int) -> Optional[dict]:
    """Atomically take `quantity` units; returns the updated product or None if stock is short."""
    return db["product"].find_one_and_update(
        {"product_id": product_id, "quantity_in_stock": {"$gte": quantity}},
        {"$inc": {"quantity_in_stock": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def release_stock(product_id: str, quantity: int):
    db["product"].update_one(
        {"product_id": product_id},
        {"$inc": {"quantity_in_stock": quantity}, "$set": {"updated_at": utcnow()}},
    )


def _get_owned_product(product_id: str, user: dict, action: str) -> dict:
    product = find_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail=f"Product not found with ID: {product_id}")
    if can(user, Capability.MANAGE_ANY_PRODUCT):
        return product
    if not can(user, Capability.SELL_PRODUCTS):
        raise HTTPException(status_code=403, detail=f"Customers are not authorized to {action} products")
    if product.get("owner") != user_id(user):
        raise HTTPException(status_code=403, detail=f"Farmers can only {action} their own products")
    return product


@router.post("", status_code=201)
def create_product(req: ProductCreateRequest, user=Depends(require(Capability.SELL_PRODUCTS, "You are not authorized to add a product"))):
    if not user.get("subscription_paid"):
        raise HTTPException(status_code=402, detail="Subscription payment required before adding products")
    if user.get("farmer_status") != "approved":
        raise HTTPException(status_code=403, detail="Your farmer account is not approved yet")

    if not req.product_name or not req.price or not req.description or not req.quantity_in_stock or not req.expiry_date:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: product_name, price, description, quantity_in_stock, and expiry_date are required.",
        )
    if req.price < 0 or req.quantity_in_stock < 0:
        raise HTTPException(status_code=400, detail="Price and stock must not be negative")

    product = ProductSchema(
        product_id=generate_product_id(),
        product_name=req.product_name.strip(),
        alt_names=req.alt_names,
        description=req.description,
        price=float(req.price),
        last_price=float(req.price),
        quantity_in_stock=int(req.quantity_in_stock),
        expiry_date=to_naive_utc(req.expiry_date),
        images=[i.strip() for i in req.images],
        owner=user_id(user),
    )
    new_id = create_document("product", product)
    created = db["product"].find_one({"_id": oid(new_id)})
    logger.info("product created product_id=%s owner=%s", created["product_id"], created["owner"])
    return {
        "message": "Product added successfully to the system and is visible to customers.",
        "product": map_product(created),
    }


@router.get("")
def list_products(user: Optional[dict] = Depends(get_optional_user)):
    query: Dict[str, Any] = {}
    if can(user, Capability.VIEW_ALL_PRODUCTS):
        pass
    elif can(user, Capability.SELL_PRODUCTS):
        query["owner"] = user_id(user)
    else:
        query["quantity_in_stock"] = {"$gt": 0}
    products = list(db["product"].find(query))
    owners = _owners_for(products)
    return {"products": [map_product(p, owners) for p in products]}


@router.get("/{product_id}")
def get_product(product_id: str):
    product = find_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": map_product(product, _owners_for([product]))}


@router.put("/{product_id}")
def update_product(product_id: str, req: ProductUpdateRequest, user=Depends(get_current_user)):
    existing = _get_owned_product(product_id, user, "update")
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    if "expiry_date" in updates:
        updates["expiry_date"] = to_naive_utc(updates["expiry_date"])
    if "price" in updates and updates["price"] != existing["price"]:
        updates["last_price"] = existing["price"]
    updates["updated_at"] = utcnow()
    updated = db["product"].find_one_and_update(
        {"_id": existing["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"message": "Product updated successfully", "updated_product": map_product(updated)}


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user)):
    existing = _get_owned_product(product_id, user, "delete")
    db["product"].delete_one({"_id": existing["_id"]})
    logger.info("product deleted product_id=%s by=%s", product_id, user["_id"])
    return {"message": "Product deleted successfully"}


@router.post("/reduce-stock")
def reduce_stock(req: ReduceStockRequest, user=Depends(get_current_user)):
    product = find_product(req.product_id)
    if not product:
        raise HTTPException(status_code=404, detail=f"Product not found with ID: {req.product_id}")
    updated = reserve_stock(req.product_id, req.quantity)
    if not updated:
        raise HTTPException(status_code=400, detail=f"Not enough stock available for product {product['product_name']}")
    return {
        "message": "Stock updated successfully",
        "product": {
            "product_id": updated["product_id"],
            "name": updated["product_name"],
            "new_stock": updated["quantity_in_stock"],
        },
    }
