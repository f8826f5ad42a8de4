import logging
from typing import Any, Dict, List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import DESCENDING, ReturnDocument

from assignments import (
    AssignmentStatus,
    AssignmentPriority,
    assign_order,
    close_for_cancelled_order,
    find_order,
    list_assignments,
    list_unassigned_orders,
    unassign_order,
    update_assignment,
)
from auth import Capability, can, get_current_user, require, user_id
from cart import clear_cart_items
from database import db, create_document, serialize_doc, utcnow
from products import find_product, is_expired, release_stock, reserve_stock
from schemas import (
    DEFAULT_PRODUCT_IMAGE,
    ORDER_STATUSES,
    DELIVERY_ORDER_STATUSES,
    Order as OrderSchema,
    OrderItem,
)
from sequences import next_order_id

logger = logging.getLogger("farmmarket.orders")

router = APIRouter(prefix="/api/orders", tags=["orders"])

order_admin = require(Capability.MANAGE_ORDERS, "Only admins can update orders")
dispatcher = require(Capability.MANAGE_DELIVERY, "Admin access required")

UNCANCELLABLE_STATUSES = ("shipped", "completed")


class OrderFromCartRequest(BaseModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class OrderLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class DirectOrderRequest(OrderFromCartRequest):
    ordered_items: List[OrderLine] = Field(..., min_length=1)


class UpdateOrderRequest(BaseModel):
    status: str
    notes: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: Optional[str] = None


class ItemStatusRequest(BaseModel):
    order_id: str
    product_id: str
    status: Literal["pending", "processing", "shipped", "completed"]


class AssignToAgentRequest(BaseModel):
    order_id: str
    delivery_agent_id: str
    priority: AssignmentPriority = "Normal"
    notes: str = ""


class AssignmentStatusRequest(BaseModel):
    order_id: str
    status: AssignmentStatus
    notes: Optional[str] = None


def _place_order(user: dict, lines: List[Tuple[str, int]], name: str, address: str, phone: str) -> dict:
    """
    Reserve stock for every line, then write the order.

    Stock taken for earlier lines is handed back if a later line or the
    order insert fails, so a rejected order leaves inventory untouched.
    """
    reserved: List[Tuple[str, int]] = []
    items: List[OrderItem] = []
    now = utcnow()
    try:
        for product_id, quantity in lines:
            product = find_product(product_id)
            if not product:
                raise HTTPException(status_code=400, detail=f"Product with ID {product_id} no longer exists.")
            if is_expired(product, now):
                raise HTTPException(
                    status_code=400,
                    detail=f'Product "{product["product_name"]}" has expired and cannot be ordered.',
                )
            if not reserve_stock(product_id, quantity):
                current = find_product(product_id) or product
                raise HTTPException(
                    status_code=400,
                    detail=f'Not enough stock for "{product["product_name"]}". '
                           f'Available: {current["quantity_in_stock"]}, Requested: {quantity}',
                )
            reserved.append((product_id, quantity))
            images = product.get("images") or []
            items.append(OrderItem(
                name=product["product_name"],
                price=product["price"],
                quantity=quantity,
                image=images[0] if images else DEFAULT_PRODUCT_IMAGE,
                product_id=product_id,
                owner=product.get("owner"),
            ))

        order = OrderSchema(
            order_id=next_order_id(),
            email=user["email"],
            name=name,
            address=address,
            phone=phone,
            ordered_items=items,
            total=round(sum(i.price * i.quantity for i in items), 2),
            date=now,
        )
        create_document("order", order)
    except Exception:
        for product_id, quantity in reserved:
            release_stock(product_id, quantity)
        if reserved:
            logger.warning("order placement failed; released %d stock reservations user=%s", len(reserved), user["_id"])
        raise

    logger.info("order %s placed user=%s total=%s", order.order_id, user["_id"], order.total)
    return db["order"].find_one({"order_id": order.order_id})


def _get_order(order_id: str) -> dict:
    order = find_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail=f"Order with ID {order_id} not found")
    return order


# Placement
@router.post("/from-cart")
def new_order_from_cart(req: OrderFromCartRequest, user=Depends(require(Capability.SHOP))):
    uid = user_id(user)
    cart = db["cart"].find_one({"user_id": uid})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty. Add items to cart before placing an order.")

    lines = [(i["product_id"], i["quantity"]) for i in cart["items"]]
    order = _place_order(user, lines, req.name, req.address, req.phone)
    clear_cart_items(uid)
    return {"message": "Order placed successfully from cart.", "order": serialize_doc(order)}


@router.post("")
def new_order(req: DirectOrderRequest, user=Depends(require(Capability.SHOP))):
    lines = [(line.product_id, line.quantity) for line in req.ordered_items]
    order = _place_order(user, lines, req.name, req.address, req.phone)
    return {"message": "Order placed successfully.", "order": serialize_doc(order)}


# Queries
@router.get("")
def list_orders(user=Depends(get_current_user)):
    if can(user, Capability.VIEW_ALL_ORDERS):
        query: Dict[str, Any] = {}
    elif can(user, Capability.VIEW_OWN_ORDERS):
        query = {"email": user["email"]}
    else:
        raise HTTPException(status_code=403, detail="Unauthorized")
    orders = db["order"].find(query).sort("date", DESCENDING)
    return {"list": [serialize_doc(o) for o in orders]}


@router.get("/farmer")
def get_farmer_orders(user=Depends(require(Capability.FULFIL_ORDER_ITEMS, "Only farmers can access this endpoint"))):
    uid = user_id(user)
    orders = []
    for order in db["order"].find({"ordered_items.owner": uid}).sort("date", DESCENDING):
        order["ordered_items"] = [i for i in order.get("ordered_items", []) if i.get("owner") == uid]
        orders.append(serialize_doc(order))
    return {"orders": orders}


@router.get("/revenue-stats")
def revenue_stats(admin=Depends(require(Capability.VIEW_ALL_ORDERS, "Only admins can view revenue stats"))):
    total = 0.0
    count = 0
    for order in db["order"].find({"status": {"$ne": "cancelled"}}, {"ordered_items": 1}):
        count += 1
        for item in order.get("ordered_items", []):
            total += item["price"] * item["quantity"]
    return {"total_revenue": round(total, 2), "order_count": count}


@router.get("/unassigned")
def get_unassigned_orders(limit: int = Query(50, ge=1, le=200), admin=Depends(dispatcher)):
    data = list_unassigned_orders(limit)
    return {"success": True, "count": len(data), "data": data}


@router.get("/assignments")
def get_order_assignments(status: Optional[AssignmentStatus] = None, delivery_agent_id: Optional[str] = None,
                          admin=Depends(dispatcher)):
    data = list_assignments(status, delivery_agent_id)
    return {"success": True, "count": len(data), "data": data}


@router.get("/by-order-id/{order_id}")
def get_order_by_order_id(order_id: str, user=Depends(get_current_user)):
    order = db["order"].find_one({"order_id": order_id})
    if not order or (not can(user, Capability.VIEW_ALL_ORDERS) and order["email"] != user["email"]):
        raise HTTPException(status_code=404, detail=f"Order with ID {order_id} not found")
    return {"success": True, "data": serialize_doc(order)}


# Updates
@router.put("/item-status")
def update_order_item_status(req: ItemStatusRequest,
                             user=Depends(require(Capability.FULFIL_ORDER_ITEMS, "Only farmers can update product status in orders"))):
    order = find_order(req.order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    uid = user_id(user)
    index = next(
        (n for n, item in enumerate(order.get("ordered_items", []))
         if item.get("product_id") == req.product_id and item.get("owner") == uid),
        None,
    )
    if index is None:
        raise HTTPException(status_code=404, detail="Product not found in order or you don't own this product")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {f"ordered_items.{index}.status": req.status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("order %s item %s -> %s by farmer=%s", order["order_id"], req.product_id, req.status, uid)
    return {"message": "Order item status updated successfully", "order": serialize_doc(updated)}


@router.post("/assign-to-agent", status_code=201)
def assign_order_to_delivery_agent(req: AssignToAgentRequest, admin=Depends(dispatcher)):
    data = assign_order(req.order_id, req.delivery_agent_id, req.priority, req.notes, str(admin["_id"]))
    return {"success": True, "message": "Order assigned successfully", "data": data}


@router.put("/assignment-status")
def update_order_assignment_status(req: AssignmentStatusRequest, admin=Depends(dispatcher)):
    data = update_assignment(req.order_id, status=req.status, notes=req.notes, performed_by=str(admin["_id"]))
    return {"success": True, "message": "Assignment status updated successfully", "data": data}


@router.delete("/unassign/{order_id}")
def unassign_order_from_agent(order_id: str, admin=Depends(dispatcher)):
    agent_id = unassign_order(order_id)
    return {"success": True, "message": f"Order {order_id} unassigned from agent {agent_id}"}


@router.put("/{order_id}/status")
def update_order_status(order_id: str, req: OrderStatusRequest, admin=Depends(order_admin)):
    if not req.status or req.status not in DELIVERY_ORDER_STATUSES:
        raise HTTPException(
            status_code=400,
            detail="Invalid status. Valid statuses are: " + ", ".join(DELIVERY_ORDER_STATUSES),
        )
    order = db["order"].find_one_and_update(
        {"order_id": order_id},
        {"$set": {"status": req.status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise HTTPException(status_code=404, detail=f"Order with ID {order_id} not found")
    if req.status == "cancelled":
        close_for_cancelled_order(order_id, str(admin["_id"]))
    logger.info("order %s status -> %s", order_id, req.status)
    return {"success": True, "message": "Order status updated successfully", "data": serialize_doc(order)}


@router.put("/{order_id}")
def update_order(order_id: str, req: UpdateOrderRequest, admin=Depends(order_admin)):
    if req.status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status. Valid statuses are: " + ", ".join(ORDER_STATUSES))
    order = _get_order(order_id)
    updates: Dict[str, Any] = {"status": req.status, "updated_at": utcnow()}
    if req.notes:
        updates["notes"] = req.notes
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    if req.status == "cancelled":
        close_for_cancelled_order(order["order_id"], str(admin["_id"]))
    logger.info("order %s updated status=%s by=%s", order["order_id"], req.status, admin["_id"])
    return {"message": f"Order with ID {order['order_id']} updated successfully", "order": serialize_doc(updated)}


@router.delete("/{order_id}")
def cancel_order(order_id: str, user=Depends(get_current_user)):
    order = _get_order(order_id)
    if not can(user, Capability.MANAGE_ORDERS) and order["email"] != user["email"]:
        raise HTTPException(status_code=403, detail="You can only cancel your own orders")
    if order["status"] in UNCANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled, it's already {order['status']}")
    if order["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Order is already cancelled")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"status": "cancelled", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    close_for_cancelled_order(order["order_id"], user_id(user))
    logger.info("order %s cancelled by=%s", order["order_id"], user["_id"])
    return {"message": f"Order with ID {order['order_id']} has been cancelled", "order": serialize_doc(updated)}
