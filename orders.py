"""
Order placement, order and payment listing, delivery assignment.

`place_order` runs inside one unit of work:
1. total = sum(price x quantity) over the requested lines
2. insert the order as PENDING
3. per line: re-read the menu item, refuse if stock is short, then decrement
   stock with a conditional update (stock >= quantity)
4. insert the payment record
5. move the order to CONFIRMED / payment COMPLETED
Any error in 2-5 undoes every write of the unit.
"""

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import audit
from config import Settings, get_settings
from database import Database, serialize, to_object_id, translate_errors
from errors import (
    AppError,
    AuthorizationError,
    BusinessRuleError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    TransactionAbortedError,
    ValidationError,
)
from roles import Role, can_access_order, order_scope_filter
from schemas import (
    Order,
    OrderItem,
    OrderLine,
    OrderStatus,
    Payment,
    PaymentStatus,
    PlaceOrderBody,
)
from tokens import Identity

BATCH_PREFIX = "foodontrack-"
_ALPHABET = string.ascii_uppercase + string.digits
PRICE_TOLERANCE = 0.005

# statuses in which an unassigned order may be claimed by a delivery agent
CLAIMABLE_STATUSES = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.READY.value,
)
FINISHED_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value)

logger = logging.getLogger(__name__)


def generate_batch_number() -> str:
    return BATCH_PREFIX + "".join(secrets.choice(_ALPHABET) for _ in range(6))


def generate_order_number() -> str:
    return "ORD-" + secrets.token_hex(4).upper()


def generate_transaction_id() -> str:
    return "TXN-" + secrets.token_hex(5).upper()


def compute_total(lines: List[OrderLine]) -> float:
    return round(sum(line.price * line.quantity for line in lines), 2)


def place_order(
    db: Database, identity: Identity, body: PlaceOrderBody, settings: Optional[Settings] = None
) -> Dict[str, Any]:
    settings = settings or get_settings()
    buyer_id = body.user_id or identity.user_id
    if buyer_id != identity.user_id and identity.role is not Role.ADMIN:
        raise AuthorizationError("You can only place orders for yourself")

    restaurant = db.get_document("restaurant", body.restaurant_id, label="Restaurant")
    if not restaurant.get("is_active", True):
        raise BusinessRuleError("Restaurant is not accepting orders")
    if body.address_id:
        address = db.get_document("address", body.address_id, label="Address")
        if address.get("user_id") != buyer_id:
            raise ValidationError("Delivery address does not belong to the buyer", details={"field": "address_id"})

    total = compute_total(body.items)
    if body.total_amount is not None and abs(body.total_amount - total) > PRICE_TOLERANCE:
        raise ValidationError(
            "Payment amount does not match the order total",
            details={"expected": total, "received": body.total_amount},
        )
    item_ids = [to_object_id(line.menu_item_id) for line in body.items]
    inject_failure = body.fail and not settings.is_production

    try:
        with db.unit_of_work() as uow:
            batch_number = generate_batch_number()
            while uow.find_one("order", {"batch_number": batch_number}) is not None:
                batch_number = generate_batch_number()

            now = datetime.now(timezone.utc)
            order = Order(
                user_id=buyer_id,
                restaurant_id=body.restaurant_id,
                batch_number=batch_number,
                order_number=generate_order_number(),
                items=[OrderItem(menu_item_id=l.menu_item_id, quantity=l.quantity, price=l.price) for l in body.items],
                total_amount=total,
                status=OrderStatus.PENDING,
                payment_method=body.payment_method,
                payment_status=PaymentStatus.PENDING,
                address_id=body.address_id,
                notes=body.notes,
                timeline={"order_placed": now},
            )
            order_id = uow.insert("order", order)

            items = []
            for line, item_id in zip(body.items, item_ids):
                items.append(_take_stock(uow, body.restaurant_id, line, item_id))

            if inject_failure:
                raise TransactionAbortedError("Forced failure to demonstrate rollback")

            payment = Payment(
                order_id=order_id,
                amount=total,
                payment_method=body.payment_method,
                transaction_id=generate_transaction_id(),
                status=PaymentStatus.COMPLETED,
            )
            payment_id = uow.insert("payment", payment)

            confirmed = uow.update(
                "order",
                {"_id": to_object_id(order_id), "status": OrderStatus.PENDING.value},
                {
                    "$set": {
                        "status": OrderStatus.CONFIRMED.value,
                        "payment_status": PaymentStatus.COMPLETED.value,
                        "payment_id": payment_id,
                        "items": [item.model_dump() for item in items],
                        "timeline.confirmed": now,
                    }
                },
            )
            if confirmed is None:
                raise ConflictError("Order changed while it was being placed")
    except AppError as exc:
        logger.warning(
            "order_placement_failed code=%s user=%s restaurant=%s reason=%s",
            exc.code,
            buyer_id,
            body.restaurant_id,
            exc.message,
        )
        raise

    logger.info(
        "order_placed order_id=%s batch=%s user=%s restaurant=%s total=%s",
        order_id,
        batch_number,
        buyer_id,
        body.restaurant_id,
        total,
    )
    audit.record(
        db,
        "ORDER_CREATED",
        "Order",
        order_id,
        identity,
        {"batch_number": batch_number, "total_amount": total},
    )
    payment_doc = {**payment.model_dump(), "id": payment_id}
    return {"order": serialize(confirmed), "payment": payment_doc}


def _take_stock(uow, restaurant_id: str, line: OrderLine, item_id) -> OrderItem:
    menu_item = uow.find_one("menuitem", {"_id": item_id})
    if menu_item is None:
        raise NotFoundError(f"Menu item {line.menu_item_id} not found", details={"menu_item_id": line.menu_item_id})
    name = menu_item.get("name")
    if menu_item.get("restaurant_id") != restaurant_id:
        raise ValidationError(f"{name} is not on this restaurant's menu")
    if not menu_item.get("is_available", True):
        raise BusinessRuleError(f"{name} is currently unavailable")
    if abs(float(menu_item.get("price", 0)) - line.price) > PRICE_TOLERANCE:
        raise ValidationError(
            f"Price of {name} has changed",
            details={"menu_item_id": line.menu_item_id, "price": menu_item.get("price")},
        )

    shortage = InsufficientStockError(
        f"Insufficient stock for item {name}",
        details={"menu_item_id": line.menu_item_id, "requested": line.quantity},
    )
    if menu_item.get("stock", 0) < line.quantity:
        raise shortage
    # conditional decrement: loses cleanly against a concurrent order
    if not uow.increment("menuitem", {"_id": item_id, "stock": {"$gte": line.quantity}}, "stock", -line.quantity):
        raise shortage
    return OrderItem(menu_item_id=line.menu_item_id, name=name, quantity=line.quantity, price=line.price)


def list_orders(
    db: Database, identity: Identity, status: Optional[str] = None, page: int = 1, limit: int = 10
) -> Dict[str, Any]:
    filt = order_scope_filter(identity)
    if status:
        filt["status"] = status.lower()
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    orders = db.get_documents("order", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    total = db.count("order", filt)
    return {
        "orders": orders,
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)},
    }


def get_order(db: Database, identity: Identity, order_id: str) -> Dict[str, Any]:
    order = db.get_document("order", order_id, label="Order")
    if not can_access_order(identity, order):
        raise AuthorizationError("You do not have access to this order")
    return order


def list_transactions(
    db: Database, identity: Identity, order_id: Optional[str] = None, page: int = 1, limit: int = 20
) -> Dict[str, Any]:
    """Payment records of the orders `identity` may see."""
    if order_id:
        get_order(db, identity, order_id)
        filt: Dict[str, Any] = {"order_id": order_id}
    elif identity.role is Role.ADMIN:
        filt = {}
    else:
        visible = db.get_documents("order", order_scope_filter(identity))
        filt = {"order_id": {"$in": [o["id"] for o in visible]}}
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    payments = db.get_documents("payment", filt, limit=limit, skip=(page - 1) * limit, sort=[("created_at", -1)])
    total = db.count("payment", filt)
    return {
        "transactions": payments,
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)},
    }


def available_orders(db: Database) -> List[Dict[str, Any]]:
    return db.get_documents(
        "order",
        {"delivery_person_id": None, "status": {"$in": list(CLAIMABLE_STATUSES)}},
        sort=[("created_at", 1)],
        limit=50,
    )


def my_deliveries(db: Database, identity: Identity, include_finished: bool = False) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"delivery_person_id": identity.user_id}
    if not include_finished:
        filt["status"] = {"$nin": list(FINISHED_STATUSES)}
    return db.get_documents("order", filt, sort=[("created_at", -1)])


def claim_order(db: Database, identity: Identity, order_id: str) -> Dict[str, Any]:
    """Assign an unassigned order to the calling delivery agent.

    One conditional update does the check and the write, so two agents racing
    for the same order cannot both win.
    """
    _id = to_object_id(order_id)
    claimed = db.compare_and_set(
        "order",
        {"_id": _id, "delivery_person_id": None, "status": {"$in": list(CLAIMABLE_STATUSES)}},
        {"delivery_person_id": identity.user_id, "assigned_at": datetime.now(timezone.utc)},
    )
    if claimed is None:
        with translate_errors("find_one", collection="order", id=order_id):
            existing = db["order"].find_one({"_id": _id})
        if existing is None:
            raise NotFoundError("Order not found")
        if existing.get("delivery_person_id"):
            raise ConflictError("Order already assigned to another delivery person")
        raise BusinessRuleError(f"Order cannot be claimed while {existing.get('status')}")

    logger.info("order_claimed order_id=%s delivery_person=%s", order_id, identity.user_id)
    audit.record(db, "ORDER_ASSIGNED", "Order", order_id, identity, {"delivery_person_id": identity.user_id})
    return claimed
