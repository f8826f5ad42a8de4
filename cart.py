import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import Capability, require, user_id
from database import db, serialize_doc, utcnow
from products import find_product, is_expired
from schemas import Cart as CartSchema

logger = logging.getLogger("farmmarket.cart")

router = APIRouter(prefix="/api/cart", tags=["cart"])

shopper = require(Capability.SHOP)


class AddToCartRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class UpdateCartItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=0)


def _product_view(product: dict) -> dict:
    return {
        "product_id": product["product_id"],
        "product_name": product["product_name"],
        "price": product["price"],
        "images": product.get("images", []),
        "quantity_in_stock": product["quantity_in_stock"],
        "expiry_date": product.get("expiry_date"),
    }


def _products_by_id(items: List[dict]) -> Dict[str, dict]:
    ids = [i["product_id"] for i in items]
    return {p["product_id"]: p for p in db["product"].find({"product_id": {"$in": ids}})}


def cart_response(cart: dict) -> dict:
    """Cart with product details populated plus the computed summary."""
    products = _products_by_id(cart.get("items", []))
    items = []
    total_items = 0
    total_price = 0.0
    for item in cart.get("items", []):
        product = products.get(item["product_id"])
        entry = {"product_id": item["product_id"], "quantity": item["quantity"], "added_at": item.get("added_at")}
        if product:
            entry["product"] = _product_view(product)
            total_items += item["quantity"]
            total_price += product["price"] * item["quantity"]
        items.append(entry)
    return serialize_doc({
        "cart": {"user_id": cart["user_id"], "items": items, "updated_at": cart.get("updated_at")},
        "summary": {
            "total_items": total_items,
            "total_price": round(total_price, 2),
            "item_count": len(items),
        },
    })


def get_or_create_cart(uid: str) -> dict:
    now = utcnow()
    return db["cart"].find_one_and_update(
        {"user_id": uid},
        {"$setOnInsert": {"items": [], "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _save_items(uid: str, items: List[dict]) -> dict:
    items = CartSchema(user_id=uid, items=items).model_dump()["items"]
    now = utcnow()
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": items, "updated_at": now}})
    return db["cart"].find_one({"user_id": uid})


def clear_cart_items(uid: str):
    db["cart"].update_one({"user_id": uid}, {"$set": {"items": [], "updated_at": utcnow()}})


@router.post("/add")
def add_to_cart(req: AddToCartRequest, user=Depends(shopper)):
    uid = user_id(user)
    product = find_product(req.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if is_expired(product):
        raise HTTPException(
            status_code=400,
            detail=f'Product "{product["product_name"]}" has expired and cannot be added to cart',
        )
    stock = product["quantity_in_stock"]
    if req.quantity > stock:
        raise HTTPException(status_code=400, detail=f"Not enough stock available. Only {stock} items left")

    cart = get_or_create_cart(uid)
    items = cart.get("items", [])
    existing = next((i for i in items if i["product_id"] == req.product_id), None)
    if existing:
        new_quantity = existing["quantity"] + req.quantity
        if new_quantity > stock:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot add {req.quantity} more items. Total would exceed available stock of {stock}",
            )
        existing["quantity"] = new_quantity
        existing["added_at"] = utcnow()
    else:
        items.append({"product_id": req.product_id, "quantity": req.quantity, "added_at": utcnow()})

    cart = _save_items(uid, items)
    return {"message": "Item added to cart successfully", **cart_response(cart)}


@router.get("")
def get_cart(user=Depends(shopper)):
    uid = user_id(user)
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        return cart_response({"user_id": uid, "items": [], "updated_at": utcnow()})

    products = _products_by_id(cart.get("items", []))
    now = utcnow()
    valid = [
        i for i in cart.get("items", [])
        if i["product_id"] in products and not is_expired(products[i["product_id"]], now)
    ]
    if len(valid) != len(cart.get("items", [])):
        logger.info("dropped %d stale cart lines user=%s", len(cart["items"]) - len(valid), uid)
        cart = _save_items(uid, valid)
    return cart_response(cart)


@router.put("/update")
def update_cart_item(req: UpdateCartItemRequest, user=Depends(shopper)):
    uid = user_id(user)
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    index = next((n for n, i in enumerate(items) if i["product_id"] == req.product_id), None)
    if index is None:
        raise HTTPException(status_code=404, detail="Item not found in cart")

    if req.quantity == 0:
        items.pop(index)
    else:
        product = find_product(req.product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if req.quantity > product["quantity_in_stock"]:
            raise HTTPException(
                status_code=400,
                detail=f"Not enough stock available. Only {product['quantity_in_stock']} items left",
            )
        items[index]["quantity"] = req.quantity
        items[index]["added_at"] = utcnow()

    cart = _save_items(uid, items)
    message = "Item removed from cart" if req.quantity == 0 else "Cart updated successfully"
    return {"message": message, **cart_response(cart)}


@router.delete("/remove/{product_id}")
def remove_from_cart(product_id: str, user=Depends(shopper)):
    uid = user_id(user)
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = [i for i in cart.get("items", []) if i["product_id"] != product_id]
    cart = _save_items(uid, items)
    return {"message": "Item removed from cart successfully", **cart_response(cart)}


@router.delete("/clear")
def clear_cart(user=Depends(shopper)):
    clear_cart_items(user_id(user))
    return {"message": "Cart cleared successfully"}
