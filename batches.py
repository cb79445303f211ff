"""
Delivery batches: one restaurant-to-customer run per order, tracked by the
order's batch number with its own status and lifecycle timestamps.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import audit
from database import Database, to_object_id
from errors import AuthorizationError, BusinessRuleError, ConflictError, NotFoundError
from roles import Role, can_access_order
from schemas import Batch, BatchItem, BatchStatus, CreateBatchBody
from tokens import Identity
from transitions import ORDER_RULES

CLAIMABLE_BATCH_STATUSES = (BatchStatus.PREPARED.value, BatchStatus.PACKED.value)

logger = logging.getLogger(__name__)


def create_batch(db: Database, identity: Identity, body: CreateBatchBody) -> Dict[str, Any]:
    order = db.get_document("order", body.order_id, label="Order")
    if identity.role is not Role.ADMIN and (
        identity.role is not Role.RESTAURANT_OWNER or not can_access_order(identity, order)
    ):
        raise AuthorizationError("Only the restaurant that owns the order can create its batch")
    if ORDER_RULES.is_terminal(order["status"]):
        raise BusinessRuleError(f"Cannot create a batch for a {order['status']} order")
    if db.find_one("batch", {"batch_number": order["batch_number"]}) is not None:
        raise ConflictError("A batch already exists for this order", details={"batch_number": order["batch_number"]})

    batch = Batch(
        batch_number=order["batch_number"],
        restaurant_id=order["restaurant_id"],
        order_id=order["id"],
        delivery_guy_id=order.get("delivery_person_id"),
        status=BatchStatus.PREPARED,
        items=[BatchItem(name=i.get("name"), quantity=i["quantity"]) for i in order.get("items", [])],
        prepared_at=datetime.now(timezone.utc),
        notes=body.notes,
    )
    batch_id = db.create_document("batch", batch)
    logger.info("batch_created batch=%s order_id=%s", batch.batch_number, order["id"])
    audit.record(db, "BATCH_CREATED", "Batch", batch_id, identity, {"batch_number": batch.batch_number})
    return {**batch.model_dump(), "id": batch_id}


def get_batch(db: Database, batch_number: str) -> Dict[str, Any]:
    """Public tracking view: the batch plus its order's status and timeline."""
    batch = db.find_one("batch", {"batch_number": batch_number})
    order = db.find_one("order", {"batch_number": batch_number})
    if batch is None and order is None:
        raise NotFoundError("Batch not found", details={"batch_number": batch_number})
    tracking: Dict[str, Any] = {"batch_number": batch_number, "batch": batch}
    if order is not None:
        tracking["order"] = {
            "id": order["id"],
            "status": order["status"],
            "timeline": order.get("timeline", {}),
            "restaurant_id": order["restaurant_id"],
            "items": [{"name": i.get("name"), "quantity": i["quantity"]} for i in order.get("items", [])],
        }
    return tracking


def list_batches(
    db: Database, identity: Identity, status: Optional[str] = None, limit: int = 50
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if identity.role is Role.RESTAURANT_OWNER:
        filt["restaurant_id"] = identity.restaurant_id or "__none__"
    elif identity.role is Role.DELIVERY_GUY:
        filt["delivery_guy_id"] = identity.user_id
    elif identity.role is Role.CUSTOMER:
        orders = db.get_documents("order", {"user_id": identity.user_id})
        filt["order_id"] = {"$in": [o["id"] for o in orders]}
    if status:
        filt["status"] = status.upper()
    return db.get_documents("batch", filt, limit=limit, sort=[("created_at", -1)])


def claim_batch(db: Database, identity: Identity, batch_number: str) -> Dict[str, Any]:
    """Assign a batch and its order to the calling delivery agent.

    Both writes are conditional on the record still being unassigned (or
    already held by the caller).
    """
    batch = db.find_one("batch", {"batch_number": batch_number})
    if batch is None:
        raise NotFoundError("Batch not found", details={"batch_number": batch_number})
    order = db.get_document("order", batch["order_id"], label="Order")
    if order.get("delivery_person_id") not in (None, identity.user_id):
        raise ConflictError("Order already assigned to another delivery person")

    claimed = db.compare_and_set(
        "batch",
        {
            "batch_number": batch_number,
            "delivery_guy_id": {"$in": [None, identity.user_id]},
            "status": {"$in": list(CLAIMABLE_BATCH_STATUSES)},
        },
        {"delivery_guy_id": identity.user_id},
    )
    if claimed is None:
        current = db.find_one("batch", {"batch_number": batch_number})
        if current and current.get("delivery_guy_id") not in (None, identity.user_id):
            raise ConflictError("Batch already assigned to another delivery person")
        raise BusinessRuleError(f"Batch cannot be claimed while {current['status'] if current else 'missing'}")

    if order.get("delivery_person_id") is None:
        assigned = db.compare_and_set(
            "order",
            {"_id": to_object_id(order["id"]), "delivery_person_id": None},
            {"delivery_person_id": identity.user_id, "assigned_at": datetime.now(timezone.utc)},
        )
        if assigned is None:
            # lost the order to another agent between the two writes
            if batch.get("delivery_guy_id") is None:
                db.compare_and_set(
                    "batch",
                    {"batch_number": batch_number, "delivery_guy_id": identity.user_id},
                    {"delivery_guy_id": None},
                )
            raise ConflictError("Order already assigned to another delivery person")

    logger.info("batch_claimed batch=%s delivery_guy=%s", batch_number, identity.user_id)
    audit.record(db, "BATCH_ASSIGNED", "Batch", claimed["id"], identity, {"batch_number": batch_number})
    return claimed
