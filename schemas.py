"""
Database Schemas for FoodONtracks

Each Pydantic model maps to a MongoDB collection (lowercased class name)
- User -> user
- Address -> address
- Restaurant -> restaurant
- MenuItem -> menuitem
- Order -> order (owns its line items and timeline)
- Payment -> payment
- Batch -> batch
- Review -> review
- AuditLog -> auditlog

References between collections are stored as string ids and never cascade.
Request bodies accepted by the API are declared at the bottom of the module.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from roles import Role


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    PICKED_BY_DELIVERY = "picked_by_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    CREDIT_CARD = "CREDIT_CARD"
    UPI = "UPI"
    WALLET = "WALLET"


class VehicleType(str, Enum):
    BIKE = "bike"
    SCOOTER = "scooter"
    CAR = "car"


class BatchStatus(str, Enum):
    PREPARED = "PREPARED"
    PACKED = "PACKED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class User(Document):
    """Account of any role. Never hard-deleted; `is_active` is the soft delete."""

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Lowercased email address")
    password_hash: str = Field(..., description="bcrypt hash of the password")
    role: Role = Role.CUSTOMER
    role_level: int = Field(1, ge=1, le=4)
    phone_number: Optional[str] = None
    restaurant_id: Optional[str] = Field(None, description="Links to restaurant._id (RESTAURANT_OWNER)")
    is_active: bool = True
    last_login: Optional[datetime] = None
    # delivery agents only
    is_available: bool = True
    vehicle_type: Optional[VehicleType] = None
    vehicle_number: Optional[str] = None


class Address(Document):
    """Delivery address owned by one user; at most one per user is the default."""

    user_id: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "USA"
    is_default: bool = False


class Restaurant(Document):
    name: str
    description: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    owner_id: Optional[str] = Field(None, description="Links to user._id (RESTAURANT_OWNER)")
    cuisine: List[str] = Field(default_factory=list)
    is_active: bool = True
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)


class MenuItem(Document):
    restaurant_id: str
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: str = "General"
    stock: int = Field(0, ge=0)
    is_available: bool = True
    image_url: Optional[str] = None


class OrderItem(BaseModel):
    menu_item_id: str
    name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price at order time")


class Order(Document):
    user_id: str
    restaurant_id: str
    delivery_person_id: Optional[str] = None
    batch_number: str = Field(..., description="foodontrack-XXXXXX tracking number")
    order_number: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    address_id: Optional[str] = None
    notes: Optional[str] = None
    timeline: Dict[str, datetime] = Field(default_factory=dict)


class Payment(Document):
    order_id: str
    amount: float = Field(..., ge=0)
    payment_method: PaymentMethod
    transaction_id: str
    status: PaymentStatus = PaymentStatus.COMPLETED


class BatchItem(BaseModel):
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    temperature: Optional[float] = None


class Batch(Document):
    """One restaurant-to-customer delivery run, tracked apart from Order.status."""

    batch_number: str
    restaurant_id: str
    order_id: str
    delivery_guy_id: Optional[str] = None
    status: BatchStatus = BatchStatus.PREPARED
    items: List[BatchItem] = Field(default_factory=list)
    prepared_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None


class RatingEntry(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    rated_at: datetime


class Review(Document):
    """One per delivered order; restaurant and delivery ratings are independent."""

    order_id: str
    customer_id: str
    restaurant_id: str
    delivery_guy_id: Optional[str] = None
    batch_number: Optional[str] = None
    restaurant: Optional[RatingEntry] = None
    delivery: Optional[RatingEntry] = None
    is_published: bool = True


class AuditLog(Document):
    action: str
    performed_by: Optional[str] = None
    performed_by_role: Optional[str] = None
    target_type: str
    target_id: Optional[str] = None
    details: Dict = Field(default_factory=dict)
    success: bool = True
    timestamp: datetime


# ---------------------- Request bodies ----------------------

class SignupBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    role: Role = Role.CUSTOMER
    phone_number: Optional[str] = Field(None, max_length=20)
    restaurant_street: Optional[str] = None
    restaurant_city: Optional[str] = None
    restaurant_state: Optional[str] = None
    restaurant_zip_code: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)


class RefreshBody(BaseModel):
    refresh_token: Optional[str] = None


class UpsertRestaurant(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None
    owner_id: Optional[str] = None
    cuisine: List[str] = Field(default_factory=list)


class UpdateRestaurant(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[str] = None
    phone_number: Optional[str] = None
    cuisine: Optional[List[str]] = None
    is_active: Optional[bool] = None


class UpsertMenuItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: str = "General"
    stock: int = Field(0, ge=0)
    is_available: bool = True
    image_url: Optional[str] = None


class UpdateMenuItem(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    is_available: Optional[bool] = None
    image_url: Optional[str] = None


class OrderLine(BaseModel):
    menu_item_id: str
    quantity: int = Field(..., ge=1, le=100)
    price: float = Field(..., ge=0, description="Unit price the customer saw")


class PlaceOrderBody(BaseModel):
    user_id: Optional[str] = Field(None, description="Buyer; defaults to the caller")
    restaurant_id: str
    items: List[OrderLine] = Field(..., min_length=1)
    address_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    total_amount: Optional[float] = Field(None, gt=0, description="Amount the client expects to pay")
    notes: Optional[str] = Field(None, max_length=500)
    fail: bool = Field(False, description="Abort after stock decrement (rollback drill)")


class StatusUpdateBody(BaseModel):
    status: str = Field(..., min_length=1, max_length=40)
    notes: Optional[str] = Field(None, max_length=500)


class ClaimOrderBody(BaseModel):
    order_id: str


class CreateBatchBody(BaseModel):
    order_id: str
    notes: Optional[str] = Field(None, max_length=500)


class ReviewBody(BaseModel):
    order_id: str
    restaurant_rating: Optional[int] = Field(None, ge=1, le=5)
    restaurant_comment: Optional[str] = Field(None, max_length=1000)
    delivery_rating: Optional[int] = Field(None, ge=1, le=5)
    delivery_comment: Optional[str] = Field(None, max_length=1000)
    # shorthand for the restaurant rating
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _fold_shorthand(self):
        if self.restaurant_rating is None and self.rating is not None:
            self.restaurant_rating = self.rating
            if self.restaurant_comment is None:
                self.restaurant_comment = self.comment
        if self.restaurant_rating is None and self.delivery_rating is None:
            raise ValueError("Please provide at least one rating")
        return self


class UpdateUserBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=20)
    is_active: Optional[bool] = Field(None, description="Admin only")


class DeliveryProfileBody(BaseModel):
    is_available: Optional[bool] = None
    vehicle_type: Optional[VehicleType] = None
    vehicle_number: Optional[str] = Field(None, min_length=1, max_length=20)


class AddressBody(BaseModel):
    user_id: Optional[str] = Field(None, description="Owner; defaults to the caller")
    street: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = "USA"
    is_default: bool = False


class UpdateAddress(BaseModel):
    street: Optional[str] = Field(None, min_length=1, max_length=200)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=1, max_length=100)
    zip_code: Optional[str] = Field(None, min_length=1, max_length=20)
    country: Optional[str] = None
    is_default: Optional[bool] = None
