"""
User profiles, delivery agent profiles and delivery addresses.

Users are never hard-deleted. Deactivation clears `is_active`, which login and
token refresh both refuse. An address belongs to one user, and at most one of
a user's addresses is the default.
"""

import logging
from typing import Any, Dict, List, Optional

import audit
from database import Database, serialize, to_object_id
from errors import AuthorizationError, BusinessRuleError, ValidationError
from roles import Role, can_access_order
from schemas import Address, AddressBody, DeliveryProfileBody, UpdateAddress, UpdateUserBody
from tokens import Identity

logger = logging.getLogger(__name__)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(user) if "_id" in user else dict(user)
    out.pop("password_hash", None)
    return out


def _paginate(page: int, limit: int):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    return page, limit, (page - 1) * limit


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)}


def is_self_or_admin(identity: Identity, user_id: str) -> bool:
    return identity.role is Role.ADMIN or identity.user_id == user_id


# ---------------------- Users ----------------------
def get_user(db: Database, identity: Identity, user_id: str) -> Dict[str, Any]:
    if not is_self_or_admin(identity, user_id):
        raise AuthorizationError("You can only view your own profile")
    return public_user(db.get_document("user", user_id, label="User"))


def list_users(
    db: Database,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if role:
        filt["role"] = role.upper()
    if is_active is not None:
        filt["is_active"] = is_active
    page, limit, skip = _paginate(page, limit)
    users = db.get_documents("user", filt, limit=limit, skip=skip, sort=[("created_at", -1)])
    return {
        "users": [public_user(u) for u in users],
        "pagination": _pagination(page, limit, db.count("user", filt)),
    }


def update_user(db: Database, identity: Identity, user_id: str, body: UpdateUserBody) -> Dict[str, Any]:
    """Profile update by the user or an admin. Role and email never change here."""
    if not is_self_or_admin(identity, user_id):
        raise AuthorizationError("You can only update your own profile")
    fields = body.model_dump(exclude_unset=True)
    if "is_active" in fields and identity.role is not Role.ADMIN:
        raise AuthorizationError("Only an admin can change account status")
    if not fields:
        raise ValidationError("No fields to update")

    db.get_document("user", user_id, label="User")
    db.update_fields("user", user_id, fields)
    logger.info("user_updated user_id=%s by=%s fields=%s", user_id, identity.user_id, sorted(fields))
    audit.record(db, "USER_UPDATED", "User", user_id, identity, {"fields": sorted(fields)})
    return public_user(db.get_document("user", user_id, label="User"))


def deactivate_user(db: Database, identity: Identity, user_id: str) -> Dict[str, Any]:
    if user_id == identity.user_id:
        raise BusinessRuleError("You cannot deactivate your own account")
    user = db.get_document("user", user_id, label="User")
    if user.get("is_active", True):
        db.update_fields("user", user_id, {"is_active": False})
        logger.info("user_deactivated user_id=%s by=%s", user_id, identity.user_id)
        audit.record(db, "USER_DEACTIVATED", "User", user_id, identity, {"email": user.get("email")})
    return public_user(db.get_document("user", user_id, label="User"))


# ---------------------- Delivery agents ----------------------
def delivery_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "name": user.get("name"),
        "phone_number": user.get("phone_number"),
        "vehicle_type": user.get("vehicle_type"),
        "vehicle_number": user.get("vehicle_number"),
        "is_available": user.get("is_available", True),
    }


def list_delivery_persons(
    db: Database, is_available: Optional[bool] = None, page: int = 1, limit: int = 10
) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"role": Role.DELIVERY_GUY.value, "is_active": True}
    if is_available is not None:
        filt["is_available"] = is_available
    page, limit, skip = _paginate(page, limit)
    agents = db.get_documents("user", filt, limit=limit, skip=skip, sort=[("name", 1)])
    return {
        "delivery_persons": [delivery_profile(a) for a in agents],
        "pagination": _pagination(page, limit, db.count("user", filt)),
    }


def update_delivery_profile(db: Database, identity: Identity, body: DeliveryProfileBody) -> Dict[str, Any]:
    fields = body.model_dump(exclude_unset=True, mode="json")
    if not fields:
        raise ValidationError("No fields to update")
    db.update_fields("user", identity.user_id, fields)
    logger.info("delivery_profile_updated user_id=%s fields=%s", identity.user_id, sorted(fields))
    return delivery_profile(db.get_document("user", identity.user_id, label="User"))


# ---------------------- Addresses ----------------------
def can_access_address(db: Database, identity: Identity, address: Dict[str, Any]) -> bool:
    """Owner and admin always; staff through an order they can access that ships to it."""
    if is_self_or_admin(identity, address.get("user_id")):
        return True
    if identity.role in (Role.RESTAURANT_OWNER, Role.DELIVERY_GUY):
        linked = db.get_documents("order", {"address_id": address["id"]})
        return any(can_access_order(identity, order) for order in linked)
    return False


def _load_owned_address(db: Database, identity: Identity, address_id: str) -> Dict[str, Any]:
    address = db.get_document("address", address_id, label="Address")
    if not is_self_or_admin(identity, address["user_id"]):
        raise AuthorizationError("You can only manage your own addresses")
    return address


def _clear_default(uow, user_id: str, keep=None) -> None:
    for other in uow.find("address", {"user_id": user_id, "is_default": True}):
        if other["_id"] != keep:
            uow.update("address", {"_id": other["_id"]}, {"$set": {"is_default": False}})


def list_addresses(db: Database, identity: Identity, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    owner = user_id or identity.user_id
    if not is_self_or_admin(identity, owner):
        raise AuthorizationError("You can only view your own addresses")
    return db.get_documents("address", {"user_id": owner}, sort=[("is_default", -1), ("created_at", 1)])


def get_address(db: Database, identity: Identity, address_id: str) -> Dict[str, Any]:
    address = db.get_document("address", address_id, label="Address")
    if not can_access_address(db, identity, address):
        raise AuthorizationError("You do not have access to this address")
    return address


def create_address(db: Database, identity: Identity, body: AddressBody) -> Dict[str, Any]:
    owner = body.user_id or identity.user_id
    if not is_self_or_admin(identity, owner):
        raise AuthorizationError("You can only add addresses to your own account")
    if owner != identity.user_id:
        db.get_document("user", owner, label="User")

    address = Address(user_id=owner, **body.model_dump(exclude={"user_id"}))
    with db.unit_of_work() as uow:
        if address.is_default:
            _clear_default(uow, owner)
        address_id = uow.insert("address", address)
    logger.info("address_created address_id=%s user_id=%s", address_id, owner)
    return db.get_document("address", address_id, label="Address")


def update_address(db: Database, identity: Identity, address_id: str, body: UpdateAddress) -> Dict[str, Any]:
    address = _load_owned_address(db, identity, address_id)
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")
    _id = to_object_id(address_id)
    with db.unit_of_work() as uow:
        if fields.get("is_default"):
            _clear_default(uow, address["user_id"], keep=_id)
        uow.update("address", {"_id": _id}, {"$set": fields})
    return db.get_document("address", address_id, label="Address")


def delete_address(db: Database, identity: Identity, address_id: str) -> None:
    _load_owned_address(db, identity, address_id)
    db.delete_document("address", address_id)
    logger.info("address_deleted address_id=%s by=%s", address_id, identity.user_id)
