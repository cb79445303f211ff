"""
Status transitions for orders and batches.

A change must pass two independent checks:
- the role allow-list (may this role move anything to the target status?)
- the state table (may the current status advance to the target status?)
Either rejection is a ForbiddenTransitionError. The role check answers 403,
the state check 400.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

import audit
from database import Database, to_object_id
from errors import (
    AuthorizationError,
    ConflictError,
    ForbiddenTransitionError,
    NotFoundError,
    ValidationError,
)
from roles import Role, can_access_order, parse_role
from schemas import BatchStatus, OrderStatus, PaymentMethod, PaymentStatus
from tokens import Identity

logger = logging.getLogger(__name__)


class TransitionRules:
    def __init__(
        self,
        graph: Mapping[str, FrozenSet[str]],
        role_targets: Mapping[Role, FrozenSet[str]],
        role_sources: Optional[Mapping[Role, FrozenSet[str]]] = None,
    ):
        self.graph = graph
        self.role_targets = role_targets
        self.role_sources = role_sources or {}

    @property
    def states(self) -> FrozenSet[str]:
        return frozenset(self.graph)

    def is_terminal(self, status: str) -> bool:
        return not self.graph.get(status)

    def check_role(self, role: Any, target: str, current: Optional[str] = None) -> None:
        role = parse_role(role)
        if role is None or target not in self.role_targets.get(role, frozenset()):
            raise ForbiddenTransitionError(
                f"You are not authorized to set status to: {target}",
                reason="role",
                details={"role": getattr(role, "value", None), "target": target},
            )
        sources = self.role_sources.get(role)
        if current is not None and sources is not None and current not in sources:
            raise ForbiddenTransitionError(
                f"{role.value} may only set {target} from {', '.join(sorted(sources))}",
                reason="role",
                details={"role": role.value, "from": current, "target": target},
            )

    def check_state(self, current: str, target: str) -> None:
        if self.is_terminal(current):
            raise ForbiddenTransitionError(
                f"Cannot change status of a {current} record",
                details={"from": current, "target": target},
            )
        if target not in self.graph[current]:
            raise ForbiddenTransitionError(
                f"Invalid status transition from {current} to {target}",
                details={"from": current, "target": target, "allowed": sorted(self.graph[current])},
            )


_O = OrderStatus
ORDER_RULES = TransitionRules(
    graph={
        _O.PENDING.value: frozenset({_O.CONFIRMED.value, _O.CANCELLED.value}),
        _O.CONFIRMED.value: frozenset({_O.PREPARING.value, _O.CANCELLED.value}),
        _O.PREPARING.value: frozenset({_O.READY.value, _O.CANCELLED.value}),
        _O.READY.value: frozenset(
            {_O.PICKED_UP.value, _O.PICKED_BY_DELIVERY.value, _O.OUT_FOR_DELIVERY.value, _O.CANCELLED.value}
        ),
        _O.PICKED_UP.value: frozenset({_O.OUT_FOR_DELIVERY.value, _O.DELIVERED.value, _O.CANCELLED.value}),
        _O.PICKED_BY_DELIVERY.value: frozenset(
            {_O.OUT_FOR_DELIVERY.value, _O.DELIVERED.value, _O.CANCELLED.value}
        ),
        _O.OUT_FOR_DELIVERY.value: frozenset({_O.DELIVERED.value, _O.CANCELLED.value}),
        _O.DELIVERED.value: frozenset(),
        _O.CANCELLED.value: frozenset(),
    },
    role_targets={
        Role.ADMIN: frozenset(s.value for s in OrderStatus),
        Role.RESTAURANT_OWNER: frozenset(
            {_O.CONFIRMED.value, _O.PREPARING.value, _O.READY.value, _O.CANCELLED.value}
        ),
        Role.DELIVERY_GUY: frozenset(
            {_O.PICKED_UP.value, _O.PICKED_BY_DELIVERY.value, _O.OUT_FOR_DELIVERY.value, _O.DELIVERED.value}
        ),
        Role.CUSTOMER: frozenset({_O.CANCELLED.value}),
    },
    role_sources={Role.CUSTOMER: frozenset({_O.PENDING.value})},
)

# timeline milestone stamped when an order enters a status
MILESTONES = {
    _O.CONFIRMED.value: "confirmed",
    _O.PREPARING.value: "preparing",
    _O.READY.value: "ready",
    _O.PICKED_UP.value: "picked_up",
    _O.PICKED_BY_DELIVERY.value: "picked_up",
    _O.OUT_FOR_DELIVERY.value: "out_for_delivery",
    _O.DELIVERED.value: "delivered",
    _O.CANCELLED.value: "cancelled",
}

_B = BatchStatus
BATCH_RULES = TransitionRules(
    graph={
        _B.PREPARED.value: frozenset({_B.PACKED.value, _B.PICKED_UP.value, _B.CANCELLED.value}),
        _B.PACKED.value: frozenset({_B.PICKED_UP.value, _B.CANCELLED.value}),
        _B.PICKED_UP.value: frozenset({_B.IN_TRANSIT.value, _B.DELIVERED.value, _B.CANCELLED.value}),
        _B.IN_TRANSIT.value: frozenset({_B.DELIVERED.value, _B.CANCELLED.value}),
        _B.DELIVERED.value: frozenset(),
        _B.CANCELLED.value: frozenset(),
    },
    role_targets={
        Role.ADMIN: frozenset(s.value for s in BatchStatus),
        Role.RESTAURANT_OWNER: frozenset({_B.PACKED.value, _B.CANCELLED.value}),
        Role.DELIVERY_GUY: frozenset({_B.PICKED_UP.value, _B.IN_TRANSIT.value, _B.DELIVERED.value}),
        Role.CUSTOMER: frozenset(),
    },
)

BATCH_TIMESTAMPS = {
    _B.PREPARED.value: "prepared_at",
    _B.PACKED.value: "packed_at",
    _B.PICKED_UP.value: "picked_up_at",
    _B.IN_TRANSIT.value: "in_transit_at",
    _B.DELIVERED.value: "delivered_at",
    _B.CANCELLED.value: "cancelled_at",
}


def parse_order_status(raw: str) -> str:
    value = (raw or "").strip().lower()
    if value not in ORDER_RULES.states:
        raise ValidationError(
            f"Invalid status: {raw}", details={"allowed": sorted(ORDER_RULES.states)}
        )
    return value


def parse_batch_status(raw: str) -> str:
    value = (raw or "").strip().upper()
    if value not in BATCH_RULES.states:
        raise ValidationError(
            f"Invalid status: {raw}", details={"allowed": sorted(BATCH_RULES.states)}
        )
    return value


def stamp_milestone(timeline: Optional[Dict[str, Any]], milestone: str, at: datetime) -> Dict[str, Any]:
    """Return a copy of `timeline` with `milestone` set, keeping an existing stamp."""
    stamped = dict(timeline or {})
    stamped.setdefault(milestone, at)
    return stamped


def update_order_status(
    db: Database, identity: Identity, order_id: str, raw_status: str, notes: Optional[str] = None
) -> Dict[str, Any]:
    target = parse_order_status(raw_status)
    # role first: a role that may never set the target is refused whatever the order's state
    ORDER_RULES.check_role(identity.role, target)

    order = db.get_document("order", order_id, label="Order")
    if not can_access_order(identity, order):
        raise AuthorizationError("You do not have access to this order")

    current = order["status"]
    ORDER_RULES.check_role(identity.role, target, current)
    ORDER_RULES.check_state(current, target)

    now = datetime.now(timezone.utc)
    timeline = stamp_milestone(order.get("timeline"), MILESTONES[target], now)
    fields: Dict[str, Any] = {"status": target, "timeline": timeline}
    if (
        target == _O.DELIVERED.value
        and order.get("payment_method") == PaymentMethod.CASH.value
        and order.get("payment_status") != PaymentStatus.COMPLETED.value
    ):
        fields["payment_status"] = PaymentStatus.COMPLETED.value
    if notes:
        fields["status_notes"] = notes

    # compare-and-set on the status read above
    updated = db.compare_and_set("order", {"_id": to_object_id(order_id), "status": current}, fields)
    if updated is None:
        raise ConflictError("Order status changed concurrently, please retry", details={"from": current})

    logger.info(
        "order_status_updated order_id=%s from=%s to=%s by=%s role=%s",
        order_id,
        current,
        target,
        identity.user_id,
        identity.role.value,
    )
    audit.record(
        db,
        "ORDER_STATUS_UPDATE",
        "Order",
        order_id,
        identity,
        {"old_status": current, "new_status": target, "changed_at": now.isoformat()},
    )
    return {
        "id": updated["id"],
        "status": updated["status"],
        "payment_status": updated.get("payment_status"),
        "timeline": updated.get("timeline", {}),
        "batch_number": updated.get("batch_number"),
    }


def update_batch_status(
    db: Database, identity: Identity, batch_number: str, raw_status: str, notes: Optional[str] = None
) -> Dict[str, Any]:
    target = parse_batch_status(raw_status)
    BATCH_RULES.check_role(identity.role, target)

    batch = db.find_one("batch", {"batch_number": batch_number})
    if batch is None:
        raise NotFoundError("Batch not found", details={"batch_number": batch_number})
    # the ownership predicate reads order-shaped references
    view = {"restaurant_id": batch.get("restaurant_id"), "delivery_person_id": batch.get("delivery_guy_id")}
    if not can_access_order(identity, view):
        raise AuthorizationError("You do not have access to this batch")

    current = batch["status"]
    BATCH_RULES.check_state(current, target)

    now = datetime.now(timezone.utc)
    fields: Dict[str, Any] = {"status": target}
    stamp = BATCH_TIMESTAMPS[target]
    if not batch.get(stamp):
        fields[stamp] = now
    if target == _B.CANCELLED.value:
        fields["cancel_reason"] = notes or "Cancelled"
    elif notes:
        fields["notes"] = notes

    updated = db.compare_and_set("batch", {"batch_number": batch_number, "status": current}, fields)
    if updated is None:
        raise ConflictError("Batch status changed concurrently, please retry", details={"from": current})

    logger.info(
        "batch_status_updated batch=%s from=%s to=%s by=%s", batch_number, current, target, identity.user_id
    )
    audit.record(
        db,
        "BATCH_STATUS_UPDATE",
        "Batch",
        updated["id"],
        identity,
        {"batch_number": batch_number, "old_status": current, "new_status": target},
    )
    return updated
