"""
Order reviews.

One review per delivered order, written by the customer who placed it. The
restaurant's average `rating` and `review_count` are recomputed in the same
unit of work as the insert.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import audit
from database import Database, serialize, to_object_id
from errors import AuthorizationError, BusinessRuleError, ConflictError, ValidationError
from schemas import OrderStatus, RatingEntry, Review, ReviewBody
from tokens import Identity

logger = logging.getLogger(__name__)


def create_review(db: Database, identity: Identity, body: ReviewBody) -> Dict[str, Any]:
    order = db.get_document("order", body.order_id, label="Order")
    if order.get("user_id") != identity.user_id:
        raise AuthorizationError("This order does not belong to you")
    if order.get("status") != OrderStatus.DELIVERED.value:
        raise BusinessRuleError("Can only review delivered orders", details={"status": order.get("status")})
    if body.delivery_rating is not None and not order.get("delivery_person_id"):
        raise ValidationError("This order has no delivery person to rate")
    if db.find_one("review", {"order_id": order["id"]}) is not None:
        raise ConflictError("Review already exists for this order")

    now = datetime.now(timezone.utc)
    review = Review(
        order_id=order["id"],
        customer_id=identity.user_id,
        restaurant_id=order["restaurant_id"],
        delivery_guy_id=order.get("delivery_person_id"),
        batch_number=order.get("batch_number"),
        restaurant=(
            RatingEntry(rating=body.restaurant_rating, comment=body.restaurant_comment, rated_at=now)
            if body.restaurant_rating is not None
            else None
        ),
        delivery=(
            RatingEntry(rating=body.delivery_rating, comment=body.delivery_comment, rated_at=now)
            if body.delivery_rating is not None
            else None
        ),
    )

    restaurant_oid = to_object_id(order["restaurant_id"])
    with db.unit_of_work() as uow:
        # the unique index on order_id also turns a racing duplicate into ConflictError
        review_id = uow.insert("review", review)
        rated = [
            r["restaurant"]["rating"]
            for r in uow.find("review", {"restaurant_id": order["restaurant_id"]})
            if r.get("restaurant")
        ]
        average = sum(rated) / len(rated) if rated else 0
        uow.update(
            "restaurant",
            {"_id": restaurant_oid},
            {"$set": {"rating": average, "review_count": len(rated)}},
        )
        uow.update(
            "order",
            {"_id": to_object_id(order["id"])},
            {"$set": {"reviewed": True}},
        )

    logger.info(
        "review_created review_id=%s order_id=%s restaurant=%s average=%.2f",
        review_id,
        order["id"],
        order["restaurant_id"],
        average,
    )
    audit.record(db, "REVIEW_CREATED", "Review", review_id, identity, {"order_id": order["id"]})
    return {**serialize({**review.model_dump(), "_id": review_id}), "restaurant_average": average}


def list_reviews(
    db: Database,
    restaurant_id: Optional[str] = None,
    delivery_guy_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"is_published": True}
    if restaurant_id:
        filt["restaurant_id"] = restaurant_id
    if delivery_guy_id:
        filt["delivery_guy_id"] = delivery_guy_id
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    reviews = db.get_documents("review", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    total = db.count("review", filt)
    return {
        "reviews": reviews,
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)},
    }
