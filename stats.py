"""Dashboard counters for restaurant owners and delivery agents."""

from typing import Any, Dict, Optional

from database import Database
from errors import ValidationError
from orders import CLAIMABLE_STATUSES
from roles import Role
from schemas import BatchStatus, OrderStatus, PaymentStatus
from tokens import Identity

# flat payout per completed delivery
DELIVERY_FEE = 50

IN_TRANSIT_STATUSES = (
    OrderStatus.PICKED_UP.value,
    OrderStatus.PICKED_BY_DELIVERY.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
)
OPEN_KITCHEN_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
)


def restaurant_stats(db: Database, identity: Identity, restaurant_id: Optional[str] = None) -> Dict[str, Any]:
    if identity.role is Role.ADMIN:
        if not restaurant_id:
            raise ValidationError("restaurant_id is required", details={"field": "restaurant_id"})
    else:
        restaurant_id = identity.restaurant_id

    empty = {
        "restaurant_id": restaurant_id,
        "total_orders": 0,
        "open_orders": 0,
        "delivered_orders": 0,
        "cancelled_orders": 0,
        "revenue": 0,
        "total_batches": 0,
        "active_batches": 0,
        "review_count": 0,
        "average_rating": 0,
    }
    if not restaurant_id:
        return empty

    restaurant = db.get_document("restaurant", restaurant_id, label="Restaurant")
    scope = {"restaurant_id": restaurant_id}
    paid = db.get_documents("order", {**scope, "payment_status": PaymentStatus.COMPLETED.value})
    return {
        **empty,
        "total_orders": db.count("order", scope),
        "open_orders": db.count("order", {**scope, "status": {"$in": list(OPEN_KITCHEN_STATUSES)}}),
        "delivered_orders": db.count("order", {**scope, "status": OrderStatus.DELIVERED.value}),
        "cancelled_orders": db.count("order", {**scope, "status": OrderStatus.CANCELLED.value}),
        "revenue": round(sum(o.get("total_amount", 0) for o in paid), 2),
        "total_batches": db.count("batch", scope),
        "active_batches": db.count(
            "batch",
            {**scope, "status": {"$nin": [BatchStatus.DELIVERED.value, BatchStatus.CANCELLED.value]}},
        ),
        "review_count": restaurant.get("review_count", 0),
        "average_rating": round(restaurant.get("rating", 0), 1),
    }


def delivery_stats(db: Database, identity: Identity, delivery_guy_id: Optional[str] = None) -> Dict[str, Any]:
    if identity.role is Role.ADMIN:
        if not delivery_guy_id:
            raise ValidationError("delivery_guy_id is required", details={"field": "delivery_guy_id"})
        agent_id = delivery_guy_id
    else:
        agent_id = identity.user_id

    scope = {"delivery_person_id": agent_id}
    delivered = db.count("order", {**scope, "status": OrderStatus.DELIVERED.value})
    rated = [
        r["delivery"]["rating"]
        for r in db.get_documents("review", {"delivery_guy_id": agent_id, "is_published": True})
        if r.get("delivery")
    ]
    return {
        "delivery_guy_id": agent_id,
        "pending_pickups": db.count("order", {**scope, "status": {"$in": list(CLAIMABLE_STATUSES)}}),
        "in_transit": db.count("order", {**scope, "status": {"$in": list(IN_TRANSIT_STATUSES)}}),
        "completed": delivered,
        "earnings": delivered * DELIVERY_FEE,
        "rating": round(sum(rated) / len(rated), 1) if rated else 0,
        "rating_count": len(rated),
    }
