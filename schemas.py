"""
Database Schemas for the Farm Market API

Each Pydantic model maps to a MongoDB collection (lowercased class name).

Collections:
- user
- product
- cart
- order
- orderassignment
- deliveryagent
- cartorder
- foodsubscription
- foodsubscriptionlog
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, EmailStr

UserType = Literal["admin", "farmer", "customer"]
FarmerStatus = Literal["pending_payment", "pending_review", "approved", "declined", ""]

ORDER_STATUSES = ("processing", "Assigned", "shipped", "completed", "cancelled")
DELIVERY_ORDER_STATUSES = ("processing", "shipped", "completed", "cancelled")
ORDER_ITEM_STATUSES = ("pending", "processing", "shipped", "completed")

ASSIGNMENT_STATUSES = ("Assigned", "In Progress", "Completed", "Failed", "Cancelled")
OPEN_ASSIGNMENT_STATUSES = ("Assigned", "In Progress")
ASSIGNMENT_PRIORITIES = ("Low", "Normal", "High", "Urgent")
AGENT_STATUSES = ("Active", "Inactive", "Busy")

DEFAULT_PRODUCT_IMAGE = "default-image-url"
DEFAULT_PROFILE_PICTURE = "https://img.freepik.com/free-vector/user-blue-gradient_78370-4692.jpg"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Login email, unique")
    password_hash: str = Field(..., description="BCrypt password hash")
    type: UserType = Field("customer", description="admin | farmer | customer")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = Field(None, description="Display name (farmers)")
    phone: Optional[str] = None
    is_blocked: bool = False
    profile_picture: str = DEFAULT_PROFILE_PICTURE
    # Farmer-only fields
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    farm_size: Literal["small", "medium", "large", ""] = ""
    experience: Literal["beginner", "intermediate", "experienced", ""] = ""
    specializations: List[str] = Field(default_factory=list)
    bio: str = ""
    subscription_paid: bool = False
    farmer_status: FarmerStatus = ""


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    product_id: str = Field(..., description="Public product id, e.g. product-k3j2h1g0f")
    product_name: str
    alt_names: List[str] = Field(default_factory=list)
    description: str
    price: float = Field(..., ge=0)
    last_price: float = Field(..., ge=0)
    quantity_in_stock: int = Field(..., ge=0)
    expiry_date: datetime
    images: List[str] = Field(default_factory=list)
    owner: str = Field(..., description="Farmer user _id as string")


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    added_at: datetime


class Cart(BaseModel):
    """
    Carts collection schema, one per user
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(BaseModel):
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    image: str = DEFAULT_PRODUCT_IMAGE
    product_id: str
    owner: Optional[str] = Field(None, description="Farmer who owned the product when ordered")
    status: Literal["pending", "processing", "shipped", "completed"] = "pending"


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_id: str = Field(..., description="Sequential id, CBC0001")
    email: EmailStr
    name: str
    address: str
    phone: str
    ordered_items: List[OrderItem]
    total: float = Field(..., ge=0)
    status: str = Field("processing", description="processing | Assigned | shipped | completed | cancelled")
    notes: str = ""
    date: datetime
    delivery_agent_id: Optional[str] = None
    assigned_agent: Optional[str] = None
    assigned_at: Optional[datetime] = None


class AssignmentHistoryEntry(BaseModel):
    action: Literal["assigned", "reassigned", "status_changed", "priority_changed", "completed", "cancelled", "failed"]
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    timestamp: datetime
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class OrderAssignment(BaseModel):
    """
    Order assignments collection schema
    Collection name: "orderassignment"
    """
    order_id: str
    delivery_agent_id: str
    status: Literal["Assigned", "In Progress", "Completed", "Failed", "Cancelled"] = "Assigned"
    priority: Literal["Low", "Normal", "High", "Urgent"] = "Normal"
    notes: str = ""
    assigned_date: datetime
    started_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    reassignment_count: int = 0
    previous_agents: List[Dict[str, Any]] = Field(default_factory=list)
    assignment_history: List[AssignmentHistoryEntry] = Field(default_factory=list)


class DeliveryAgent(BaseModel):
    """
    Delivery agents collection schema
    Collection name: "deliveryagent"
    """
    agent_id: str = Field(..., description="Sequential id, DA001")
    name: str
    phone_number: str
    email: EmailStr
    location: str
    status: Literal["Active", "Inactive", "Busy"] = "Active"
    assigned_orders: int = Field(0, ge=0)
    completed_deliveries: int = Field(0, ge=0)
    rating: float = Field(0.0, ge=0, le=5)


class CartOrderItem(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)


class CartOrder(BaseModel):
    """
    One-time gateway payments for a cart
    Collection name: "cartorder"
    """
    customer_email: EmailStr
    customer_name: str
    phone_number: str
    address: str
    city: str = "Colombo"
    order_id: str
    payhere_order_id: str
    items: List[CartOrderItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    currency: str = "LKR"
    payment_status: Literal["pending", "completed", "failed", "cancelled"] = "pending"
    order_status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"] = "pending"
    payhere_payment_id: Optional[str] = None
    payment_method: str = "payhere"


class RenewalEntry(BaseModel):
    renewal_date: datetime
    amount: float
    status: Literal["success", "failed", "cancelled"]
    payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt: int = 1
    payhere_token: Optional[str] = None


class FoodSubscription(BaseModel):
    """
    Recurring food subscriptions
    Collection name: "foodsubscription"
    """
    user_email: str
    customer_name: str
    phone_number: str
    address: str
    plan_id: str = "food_premium"
    plan_name: str = "Premium Food Subscription"
    status: Literal["active", "inactive", "cancelled", "expired", "pending_renewal", "payment_failed"] = "active"
    amount: float = 2500
    currency: str = "LKR"
    billing_cycle: str = "monthly"
    payment_method: str = "payhere"
    payhere_order_id: Optional[str] = None
    payhere_payment_id: Optional[str] = None
    payhere_recurring_token: Optional[str] = None
    auto_renew: bool = True
    renewal_attempts: int = 0
    max_renewal_attempts: int = 3
    payment_failure: bool = False
    payment_failure_reason: Optional[str] = None
    last_payment_failure_date: Optional[datetime] = None
    auto_renewal_cancelled_date: Optional[datetime] = None
    auto_renewal_cancelled_reason: Optional[str] = None
    start_date: datetime
    end_date: datetime
    next_billing_date: Optional[datetime] = None
    renewal_history: List[RenewalEntry] = Field(default_factory=list)


class FoodSubscriptionLog(BaseModel):
    """
    Append-only audit trail of subscription payment events
    Collection name: "foodsubscriptionlog"
    """
    subscription_id: str
    user_email: str
    action: Literal["created", "renewed", "cancelled", "failed", "auto_renewal_cancelled", "reactivated"]
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
