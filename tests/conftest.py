import os

os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test_access_secret"
os.environ["REFRESH_TOKEN_SECRET"] = "test_refresh_secret"
os.environ["DATABASE_TRANSACTIONS"] = "false"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

from datetime import datetime, timezone  # noqa: E402

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config import get_settings  # noqa: E402

get_settings.cache_clear()

import guards  # noqa: E402
from database import Database, get_db  # noqa: E402
from main import app  # noqa: E402
from roles import Role  # noqa: E402
from schemas import MenuItem, Order, OrderItem, Restaurant  # noqa: E402
from tokens import Identity, create_access_token  # noqa: E402


def new_id() -> str:
    return str(ObjectId())


def identity_for(role: Role, user_id=None, restaurant_id=None, email=None) -> Identity:
    user_id = user_id or new_id()
    domain = {
        Role.ADMIN: "admin.com",
        Role.RESTAURANT_OWNER: "restaurant.com",
        Role.DELIVERY_GUY: "delivery.com",
        Role.CUSTOMER: "gmail.com",
    }[role]
    return Identity(
        user_id=user_id,
        email=email or f"{role.value.lower()}-{user_id[-6:]}@{domain}",
        role=role,
        restaurant_id=restaurant_id,
    )


def bearer(identity: Identity) -> dict:
    return {"Authorization": f"Bearer {create_access_token(identity)}"}


@pytest.fixture
def database():
    client = mongomock.MongoClient()
    db = Database(client, "foodontracks_test", use_transactions=False)
    db.ensure_indexes()
    return db


@pytest.fixture
def client(database):
    guards.clear_rbac_logs()
    app.dependency_overrides[get_db] = lambda: database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed(database):
    """A restaurant with two stocked items and one identity per role."""
    restaurant_id = database.create_document(
        "restaurant", Restaurant(name="Spice Route", address="12 Station Road")
    )
    curry_id = database.create_document(
        "menuitem", MenuItem(restaurant_id=restaurant_id, name="Paneer Curry", price=150, stock=10)
    )
    biryani_id = database.create_document(
        "menuitem", MenuItem(restaurant_id=restaurant_id, name="Veg Biryani", price=300, stock=5)
    )
    return {
        "restaurant_id": restaurant_id,
        "curry_id": curry_id,
        "biryani_id": biryani_id,
        "customer": identity_for(Role.CUSTOMER),
        "owner": identity_for(Role.RESTAURANT_OWNER, restaurant_id=restaurant_id),
        "delivery": identity_for(Role.DELIVERY_GUY),
        "admin": identity_for(Role.ADMIN),
    }


@pytest.fixture
def make_order(database, seed):
    """Insert an order directly in the given state."""

    def _make(status="confirmed", user_id=None, delivery_person_id=None, **overrides):
        order = Order(
            user_id=user_id or seed["customer"].user_id,
            restaurant_id=overrides.pop("restaurant_id", seed["restaurant_id"]),
            delivery_person_id=delivery_person_id,
            batch_number=overrides.pop("batch_number", "foodontrack-" + new_id()[-6:].upper()),
            order_number="ORD-" + new_id()[-8:].upper(),
            items=[OrderItem(menu_item_id=seed["curry_id"], name="Paneer Curry", quantity=2, price=150)],
            total_amount=300,
            status=status,
            payment_status=overrides.pop("payment_status", "completed"),
            timeline={"order_placed": datetime.now(timezone.utc)},
            **overrides,
        )
        order_id = database.create_document("order", order)
        return database.get_document("order", order_id)

    return _make


def stock_of(database, item_id: str) -> int:
    return database.get_document("menuitem", item_id)["stock"]
