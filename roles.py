"""
Roles, permissions and ownership rules.

Two separate mechanisms live here:
- PERMISSION_MATRIX, an explicit allow-list of actions per (resource, role).
  Anything not listed is denied, whatever the role's level.
- ROLE_LEVELS, an integer per role used only for coarse comparisons
  (`has_minimum_role_level`). The admin area guard is the single caller.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class Role(str, Enum):
    ADMIN = "ADMIN"
    RESTAURANT_OWNER = "RESTAURANT_OWNER"
    DELIVERY_GUY = "DELIVERY_GUY"
    CUSTOMER = "CUSTOMER"


ROLE_LEVELS: Dict[Role, int] = {
    Role.ADMIN: 4,
    Role.RESTAURANT_OWNER: 3,
    Role.DELIVERY_GUY: 2,
    Role.CUSTOMER: 1,
}

RESOURCES = (
    "users",
    "restaurants",
    "menuItems",
    "orders",
    "reviews",
    "addresses",
    "transactions",
    "deliveryPersons",
    "batches",
)

ACTIONS = ("create", "read", "update", "delete", "manage")

_ALL = frozenset(ACTIONS)


def _actions(*names: str) -> FrozenSet[str]:
    return frozenset(names)


PERMISSION_MATRIX: Dict[str, Dict[Role, FrozenSet[str]]] = {
    "users": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read", "update"),
        Role.DELIVERY_GUY: _actions("read", "update"),
        Role.CUSTOMER: _actions("read", "update"),
    },
    "restaurants": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read", "update"),
        Role.DELIVERY_GUY: _actions("read"),
        Role.CUSTOMER: _actions("read"),
    },
    "menuItems": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("create", "read", "update", "delete"),
        Role.DELIVERY_GUY: _actions("read"),
        Role.CUSTOMER: _actions("read"),
    },
    "orders": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read", "update"),
        Role.DELIVERY_GUY: _actions("read", "update"),
        Role.CUSTOMER: _actions("create", "read", "update"),
    },
    "reviews": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read"),
        Role.DELIVERY_GUY: _actions(),
        Role.CUSTOMER: _actions("create", "read", "update", "delete"),
    },
    "addresses": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read"),
        Role.DELIVERY_GUY: _actions("read"),
        Role.CUSTOMER: _actions("create", "read", "update", "delete"),
    },
    "transactions": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read"),
        Role.DELIVERY_GUY: _actions("read"),
        Role.CUSTOMER: _actions("read"),
    },
    "deliveryPersons": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("read"),
        Role.DELIVERY_GUY: _actions("read", "update"),
        Role.CUSTOMER: _actions("read"),
    },
    "batches": {
        Role.ADMIN: _ALL,
        Role.RESTAURANT_OWNER: _actions("create", "read", "update"),
        Role.DELIVERY_GUY: _actions("read", "update"),
        Role.CUSTOMER: _actions("read"),
    },
}

# Reserved signup domains; customers may use any other domain.
ROLE_EMAIL_DOMAINS: Dict[Role, str] = {
    Role.ADMIN: "@admin.com",
    Role.RESTAURANT_OWNER: "@restaurant.com",
    Role.DELIVERY_GUY: "@delivery.com",
}


def parse_role(value: Any) -> Optional[Role]:
    """Return the Role for `value`, or None when it names no known role."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).upper())
    except ValueError:
        return None


def has_permission(role: Any, resource: str, action: str) -> bool:
    """Default-deny lookup in PERMISSION_MATRIX. `manage` grants every action."""
    role = parse_role(role)
    if role is None:
        return False
    allowed = PERMISSION_MATRIX.get(resource, {}).get(role, frozenset())
    return action in allowed or "manage" in allowed


def has_minimum_role_level(role: Any, required: Role) -> bool:
    role = parse_role(role)
    if role is None:
        return False
    return ROLE_LEVELS[role] >= ROLE_LEVELS[required]


def validate_email_for_role(email: str, role: Role) -> Optional[str]:
    """Return an error message when `email` is not allowed for `role`."""
    email = email.lower()
    if role in ROLE_EMAIL_DOMAINS:
        domain = ROLE_EMAIL_DOMAINS[role]
        if not email.endswith(domain):
            return f"{role.value} accounts must use the {domain} email domain"
        return None
    for reserved_role, domain in ROLE_EMAIL_DOMAINS.items():
        if email.endswith(domain):
            return f"Customers cannot use the {domain} domain, it is reserved for {reserved_role.value}"
    return None


def can_access_order(identity: Any, order: Mapping[str, Any]) -> bool:
    """Single ownership predicate for orders and the batches/reviews derived from them.

    ADMIN passes unconditionally. A restaurant owner must own the order's
    restaurant, a delivery agent must be the assigned agent, a customer must
    have placed the order.
    """
    role = parse_role(identity.role)
    if role is Role.ADMIN:
        return True
    if role is Role.RESTAURANT_OWNER:
        return bool(identity.restaurant_id) and order.get("restaurant_id") == identity.restaurant_id
    if role is Role.DELIVERY_GUY:
        return order.get("delivery_person_id") == identity.user_id
    if role is Role.CUSTOMER:
        return order.get("user_id") == identity.user_id
    return False


def order_scope_filter(identity: Any) -> Dict[str, Any]:
    """Mongo filter restricting an order query to what `identity` may see."""
    role = parse_role(identity.role)
    if role is Role.ADMIN:
        return {}
    if role is Role.RESTAURANT_OWNER:
        return {"restaurant_id": identity.restaurant_id or "__none__"}
    if role is Role.DELIVERY_GUY:
        return {"delivery_person_id": identity.user_id}
    return {"user_id": identity.user_id}


def dashboard_path(role: Role) -> str:
    return {
        Role.ADMIN: "/dashboard/admin",
        Role.RESTAURANT_OWNER: "/dashboard/restaurant",
        Role.DELIVERY_GUY: "/dashboard/delivery",
        Role.CUSTOMER: "/dashboard/customer",
    }.get(role, "/")
