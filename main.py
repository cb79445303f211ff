import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import audit
import batches
import orders
import reviews
import stats
import transitions
import users
from config import configure_logging, get_settings, validate_env
from database import Database, get_db, utcnow
from errors import (
    ERROR_CODES,
    AppError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    error_body,
)
from guards import admin_area, authenticated, get_rbac_logs, require
from roles import Role, ROLE_LEVELS, can_access_order, dashboard_path, validate_email_for_role
from schemas import (
    AddressBody,
    ClaimOrderBody,
    CreateBatchBody,
    DeliveryProfileBody,
    LoginBody,
    MenuItem,
    PlaceOrderBody,
    RefreshBody,
    Restaurant,
    ReviewBody,
    SignupBody,
    StatusUpdateBody,
    UpdateAddress,
    UpdateMenuItem,
    UpdateRestaurant,
    UpdateUserBody,
    UpsertMenuItem,
    UpsertRestaurant,
    User,
)
from tokens import (
    REFRESH_COOKIE,
    Identity,
    clear_auth_cookies,
    hash_password,
    identity_for_user,
    issue_token_pair,
    set_auth_cookies,
    verify_password,
    verify_refresh_token,
)

logger = logging.getLogger("foodontracks")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    validate_env(settings)
    if settings.database_url and settings.database_name:
        try:
            get_db().ensure_indexes()
        except PersistenceError as exc:
            logger.warning("startup_index_creation_failed retriable=%s", exc.retriable)
    logger.info("startup environment=%s", settings.environment)
    yield


app = FastAPI(title="FoodONtracks API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request method=%s path=%s status=%s duration_ms=%.1f request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request_id,
    )
    return response


# ---------------------- Error handlers ----------------------
@app.exception_handler(AppError)
def handle_app_error(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(PersistenceError)
def handle_persistence_error(request: Request, exc: PersistenceError):
    logger.error(
        "persistence_failure path=%s code=%s retriable=%s message=%s",
        request.url.path,
        exc.code,
        exc.retriable,
        exc.message,
    )
    message = "A database error occurred, please try again" if exc.retriable else "A database error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, exc.code, {"retriable": exc.retriable}),
    )


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("Validation failed", ERROR_CODES["VALIDATION_ERROR"], details),
    )


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("An unexpected error occurred", ERROR_CODES["INTERNAL_ERROR"]),
    )


# ---------------------- Helpers ----------------------
def ensure_restaurant_access(identity: Identity, restaurant_id: str) -> None:
    if not can_access_order(identity, {"restaurant_id": restaurant_id}):
        raise AuthorizationError("You can only manage your own restaurant")


# ---------------------- Auth ----------------------
@app.post("/auth/signup", status_code=201)
def signup(body: SignupBody, db: Database = Depends(get_db)):
    email = body.email.lower()
    problem = validate_email_for_role(email, body.role)
    if problem:
        raise ValidationError(problem, details={"field": "email"})
    if body.role is Role.DELIVERY_GUY and not body.phone_number:
        raise ValidationError("Phone number is required for delivery partners", details={"field": "phone_number"})
    if db.find_one("user", {"email": email}) is not None:
        raise ConflictError("User with this email already exists")

    user = User(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
        role_level=ROLE_LEVELS[body.role],
        phone_number=body.phone_number,
    )
    with db.unit_of_work() as uow:
        user_id = uow.insert("user", user)
        if body.role is Role.RESTAURANT_OWNER:
            address = ", ".join(
                part
                for part in (
                    body.restaurant_street,
                    body.restaurant_city,
                    body.restaurant_state,
                    body.restaurant_zip_code,
                )
                if part
            )
            restaurant_id = uow.insert(
                "restaurant",
                Restaurant(
                    name=f"{body.name}'s Restaurant",
                    address=address or None,
                    phone_number=body.phone_number,
                    email=email,
                    owner_id=user_id,
                ),
            )
            uow.update("user", {"email": email}, {"$set": {"restaurant_id": restaurant_id}})

    created = db.get_document("user", user_id, label="User")
    logger.info("user_signed_up user_id=%s role=%s", user_id, body.role.value)
    audit.record(db, "USER_CREATED", "User", user_id, None, {"role": body.role.value})
    return {"success": True, "message": "Signup successful", "user": users.public_user(created)}


@app.post("/auth/login")
def login(body: LoginBody, response: Response, db: Database = Depends(get_db)):
    user = db.find_one("user", {"email": body.email.lower()})
    # the hash check runs for unknown emails too
    password_ok = verify_password(body.password, user.get("password_hash") if user else None)
    # same answer for unknown email, wrong password and deactivated account
    if user is None or not user.get("is_active", True) or not password_ok:
        logger.warning("login_failed email=%s", body.email.lower())
        raise AuthenticationError("Invalid credentials", code=ERROR_CODES["INVALID_CREDENTIALS"])

    db.update_fields("user", user["id"], {"last_login": utcnow()})
    identity = identity_for_user(user)
    pair = issue_token_pair(identity)
    set_auth_cookies(response, pair)
    logger.info("login_succeeded user_id=%s role=%s", identity.user_id, identity.role.value)
    return {
        "success": True,
        "message": "Login successful",
        "user": users.public_user(user),
        "redirectUrl": dashboard_path(identity.role),
        **pair.model_dump(by_alias=True),
    }


@app.post("/auth/refresh")
def refresh(request: Request, response: Response, body: Optional[RefreshBody] = None, db: Database = Depends(get_db)):
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise AuthenticationError("Refresh token required")
    claimed = verify_refresh_token(token)
    user = db.get_document("user", claimed.user_id, label="User")
    if not user.get("is_active", True):
        raise AuthenticationError("Invalid credentials", code=ERROR_CODES["INVALID_CREDENTIALS"])
    # role and restaurant are re-read so a change takes effect on refresh
    pair = issue_token_pair(identity_for_user(user))
    set_auth_cookies(response, pair)
    return {"success": True, **pair.model_dump(by_alias=True)}


@app.post("/auth/logout")
def logout(response: Response):
    clear_auth_cookies(response)
    return {"success": True, "message": "Logged out"}


@app.get("/auth/verify")
def verify(identity: Identity = Depends(authenticated), db: Database = Depends(get_db)):
    user = db.get_document("user", identity.user_id, label="User")
    return {"success": True, "identity": identity.claims(), "user": users.public_user(user)}


# ---------------------- Users & Addresses ----------------------
@app.get("/users/{user_id}")
def get_user(
    user_id: str,
    identity: Identity = Depends(require("users", "read")),
    db: Database = Depends(get_db),
):
    return users.get_user(db, identity, user_id)


@app.patch("/users/{user_id}")
def update_user(
    user_id: str,
    body: UpdateUserBody,
    identity: Identity = Depends(require("users", "update")),
    db: Database = Depends(get_db),
):
    return {"success": True, "user": users.update_user(db, identity, user_id, body)}


@app.delete("/users/{user_id}")
def deactivate_user(
    user_id: str,
    identity: Identity = Depends(require("users", "delete")),
    db: Database = Depends(get_db),
):
    user = users.deactivate_user(db, identity, user_id)
    return {"success": True, "message": "User deactivated", "user": user}


@app.get("/delivery-persons")
def list_delivery_persons(
    is_available: Optional[bool] = None,
    page: int = 1,
    limit: int = 10,
    identity: Identity = Depends(require("deliveryPersons", "read")),
    db: Database = Depends(get_db),
):
    return users.list_delivery_persons(db, is_available=is_available, page=page, limit=limit)


@app.patch("/delivery-persons/me")
def update_delivery_profile(
    body: DeliveryProfileBody,
    identity: Identity = Depends(require("deliveryPersons", "update", roles=[Role.DELIVERY_GUY])),
    db: Database = Depends(get_db),
):
    return {"success": True, "delivery_person": users.update_delivery_profile(db, identity, body)}


@app.get("/addresses")
def list_addresses(
    user_id: Optional[str] = None,
    identity: Identity = Depends(require("addresses", "read")),
    db: Database = Depends(get_db),
):
    return {"addresses": users.list_addresses(db, identity, user_id)}


@app.post("/addresses", status_code=201)
def create_address(
    body: AddressBody,
    identity: Identity = Depends(require("addresses", "create")),
    db: Database = Depends(get_db),
):
    return {"success": True, "address": users.create_address(db, identity, body)}


@app.get("/addresses/{address_id}")
def get_address(
    address_id: str,
    identity: Identity = Depends(require("addresses", "read")),
    db: Database = Depends(get_db),
):
    return users.get_address(db, identity, address_id)


@app.patch("/addresses/{address_id}")
def update_address(
    address_id: str,
    body: UpdateAddress,
    identity: Identity = Depends(require("addresses", "update")),
    db: Database = Depends(get_db),
):
    return {"success": True, "address": users.update_address(db, identity, address_id, body)}


@app.delete("/addresses/{address_id}")
def delete_address(
    address_id: str,
    identity: Identity = Depends(require("addresses", "delete")),
    db: Database = Depends(get_db),
):
    users.delete_address(db, identity, address_id)
    return {"success": True, "message": "Address deleted"}


# ---------------------- Restaurants & Menu ----------------------
@app.get("/restaurants")
def list_restaurants(db: Database = Depends(get_db)):
    return db.get_documents("restaurant", {"is_active": True}, sort=[("name", 1)])


@app.get("/restaurants/{restaurant_id}")
def get_restaurant(restaurant_id: str, db: Database = Depends(get_db)):
    return db.get_document("restaurant", restaurant_id, label="Restaurant")


@app.post("/restaurants", status_code=201)
def create_restaurant(
    body: UpsertRestaurant,
    identity: Identity = Depends(require("restaurants", "create")),
    db: Database = Depends(get_db),
):
    if body.owner_id:
        owner = db.get_document("user", body.owner_id, label="Owner")
        if owner.get("role") != Role.RESTAURANT_OWNER.value:
            raise ValidationError("Owner must be a RESTAURANT_OWNER account", details={"field": "owner_id"})
        if owner.get("restaurant_id"):
            raise ConflictError("Owner already manages a restaurant", details={"restaurant_id": owner["restaurant_id"]})

    rid = db.create_document("restaurant", Restaurant(**body.model_dump()))
    if body.owner_id and not db.update_fields("user", body.owner_id, {"restaurant_id": rid}):
        db.delete_document("restaurant", rid)
        raise NotFoundError("Owner not found", details={"id": body.owner_id})
    audit.record(db, "RESTAURANT_CREATED", "Restaurant", rid, identity, {"owner_id": body.owner_id})
    return {"id": rid}


@app.patch("/restaurants/{restaurant_id}")
def update_restaurant(
    restaurant_id: str,
    body: UpdateRestaurant,
    identity: Identity = Depends(require("restaurants", "update")),
    db: Database = Depends(get_db),
):
    ensure_restaurant_access(identity, restaurant_id)
    db.get_document("restaurant", restaurant_id, label="Restaurant")
    fields = body.model_dump(exclude_unset=True)
    if fields:
        db.update_fields("restaurant", restaurant_id, fields)
    return db.get_document("restaurant", restaurant_id, label="Restaurant")


@app.get("/restaurant/stats")
def restaurant_stats(
    restaurant_id: Optional[str] = None,
    identity: Identity = Depends(require("restaurants", "read", roles=[Role.RESTAURANT_OWNER, Role.ADMIN])),
    db: Database = Depends(get_db),
):
    return stats.restaurant_stats(db, identity, restaurant_id)


@app.get("/restaurants/{restaurant_id}/menu")
def get_menu(restaurant_id: str, db: Database = Depends(get_db)):
    return db.get_documents("menuitem", {"restaurant_id": restaurant_id}, sort=[("category", 1), ("name", 1)])


@app.post("/restaurants/{restaurant_id}/menu", status_code=201)
def add_menu_item(
    restaurant_id: str,
    body: UpsertMenuItem,
    identity: Identity = Depends(require("menuItems", "create")),
    db: Database = Depends(get_db),
):
    ensure_restaurant_access(identity, restaurant_id)
    db.get_document("restaurant", restaurant_id, label="Restaurant")
    mid = db.create_document("menuitem", MenuItem(restaurant_id=restaurant_id, **body.model_dump()))
    return {"id": mid}


@app.patch("/menu-items/{item_id}")
def update_menu_item(
    item_id: str,
    body: UpdateMenuItem,
    identity: Identity = Depends(require("menuItems", "update")),
    db: Database = Depends(get_db),
):
    item = db.get_document("menuitem", item_id, label="Menu item")
    ensure_restaurant_access(identity, item["restaurant_id"])
    fields = body.model_dump(exclude_unset=True)
    if fields:
        db.update_fields("menuitem", item_id, fields)
    return db.get_document("menuitem", item_id, label="Menu item")


@app.delete("/menu-items/{item_id}")
def delete_menu_item(
    item_id: str,
    identity: Identity = Depends(require("menuItems", "delete")),
    db: Database = Depends(get_db),
):
    item = db.get_document("menuitem", item_id, label="Menu item")
    ensure_restaurant_access(identity, item["restaurant_id"])
    db.delete_document("menuitem", item_id)
    audit.record(db, "MENU_ITEM_DELETED", "MenuItem", item_id, identity, {"name": item.get("name")})
    return {"success": True}


# ---------------------- Orders ----------------------
@app.post("/orders", status_code=201)
def place_order(
    body: PlaceOrderBody,
    identity: Identity = Depends(require("orders", "create")),
    db: Database = Depends(get_db),
):
    result = orders.place_order(db, identity, body)
    return {"success": True, "message": "Order placed successfully", **result}


@app.get("/orders")
def list_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    identity: Identity = Depends(require("orders", "read")),
    db: Database = Depends(get_db),
):
    return orders.list_orders(db, identity, status=status, page=page, limit=limit)


@app.get("/orders/{order_id}")
def get_order(
    order_id: str,
    identity: Identity = Depends(require("orders", "read")),
    db: Database = Depends(get_db),
):
    return orders.get_order(db, identity, order_id)


@app.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdateBody,
    identity: Identity = Depends(require("orders", "update")),
    db: Database = Depends(get_db),
):
    result = transitions.update_order_status(db, identity, order_id, body.status, body.notes)
    return {"success": True, "message": "Order status updated successfully", "order": result}


@app.get("/transactions")
def list_transactions(
    order_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    identity: Identity = Depends(require("transactions", "read")),
    db: Database = Depends(get_db),
):
    return orders.list_transactions(db, identity, order_id=order_id, page=page, limit=limit)


# ---------------------- Delivery ----------------------
@app.get("/delivery/available-orders")
def available_orders(
    identity: Identity = Depends(require("orders", "read", roles=[Role.DELIVERY_GUY, Role.ADMIN])),
    db: Database = Depends(get_db),
):
    return {"orders": orders.available_orders(db)}


@app.post("/delivery/claim")
def claim_order(
    body: ClaimOrderBody,
    identity: Identity = Depends(require("orders", "update", roles=[Role.DELIVERY_GUY])),
    db: Database = Depends(get_db),
):
    order = orders.claim_order(db, identity, body.order_id)
    return {"success": True, "message": "Order assigned successfully", "order": order}


@app.get("/delivery/stats")
def delivery_stats(
    delivery_guy_id: Optional[str] = None,
    identity: Identity = Depends(require("deliveryPersons", "read", roles=[Role.DELIVERY_GUY, Role.ADMIN])),
    db: Database = Depends(get_db),
):
    return stats.delivery_stats(db, identity, delivery_guy_id)


@app.get("/delivery/my-orders")
def my_deliveries(
    include_finished: bool = False,
    identity: Identity = Depends(require("orders", "read", roles=[Role.DELIVERY_GUY])),
    db: Database = Depends(get_db),
):
    return {"orders": orders.my_deliveries(db, identity, include_finished=include_finished)}


# ---------------------- Batches ----------------------
@app.post("/batches", status_code=201)
def create_batch(
    body: CreateBatchBody,
    identity: Identity = Depends(require("batches", "create")),
    db: Database = Depends(get_db),
):
    return {"success": True, "batch": batches.create_batch(db, identity, body)}


@app.get("/batches")
def list_batches(
    status: Optional[str] = None,
    identity: Identity = Depends(require("batches", "read")),
    db: Database = Depends(get_db),
):
    return {"batches": batches.list_batches(db, identity, status=status)}


@app.get("/batches/{batch_number}")
def track_batch(batch_number: str, db: Database = Depends(get_db)):
    return batches.get_batch(db, batch_number)


@app.patch("/batches/{batch_number}/status")
def update_batch_status(
    batch_number: str,
    body: StatusUpdateBody,
    identity: Identity = Depends(require("batches", "update")),
    db: Database = Depends(get_db),
):
    batch = transitions.update_batch_status(db, identity, batch_number, body.status, body.notes)
    return {"success": True, "message": "Batch status updated successfully", "batch": batch}


@app.post("/batches/{batch_number}/claim")
def claim_batch(
    batch_number: str,
    identity: Identity = Depends(require("batches", "update", roles=[Role.DELIVERY_GUY])),
    db: Database = Depends(get_db),
):
    return {"success": True, "batch": batches.claim_batch(db, identity, batch_number)}


# ---------------------- Reviews ----------------------
@app.post("/reviews", status_code=201)
def create_review(
    body: ReviewBody,
    identity: Identity = Depends(require("reviews", "create")),
    db: Database = Depends(get_db),
):
    review = reviews.create_review(db, identity, body)
    return {"success": True, "message": "Review submitted successfully", "review": review}


@app.get("/reviews")
def list_reviews(
    restaurant_id: Optional[str] = None,
    delivery_guy_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    db: Database = Depends(get_db),
):
    return reviews.list_reviews(db, restaurant_id, delivery_guy_id, page=page, limit=limit)


# ---------------------- Admin ----------------------
@app.get("/admin/summary")
def admin_summary(identity: Identity = Depends(admin_area), db: Database = Depends(get_db)):
    paid = db.get_documents("order", {"payment_status": "completed"})
    by_status = {status: db.count("order", {"status": status}) for status in sorted(transitions.ORDER_RULES.states)}
    return {
        "users": db.count("user"),
        "restaurants": db.count("restaurant"),
        "orders": db.count("order"),
        "orders_by_status": by_status,
        "revenue": round(sum(o.get("total_amount", 0) for o in paid), 2),
        "audit_write_failures": audit.failed_writes(),
    }


@app.get("/admin/users")
def admin_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    identity: Identity = Depends(admin_area),
    db: Database = Depends(get_db),
):
    return users.list_users(db, role=role, is_active=is_active, page=page, limit=limit)


@app.get("/admin/audit-logs")
def admin_audit_logs(
    action: Optional[str] = None,
    target_type: Optional[str] = None,
    limit: int = 100,
    identity: Identity = Depends(admin_area),
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if action:
        filt["action"] = action
    if target_type:
        filt["target_type"] = target_type
    return {"logs": db.get_documents("auditlog", filt, limit=min(max(limit, 1), 500), sort=[("timestamp", -1)])}


@app.get("/admin/rbac-logs")
def admin_rbac_logs(
    role: Optional[str] = None,
    resource: Optional[str] = None,
    allowed: Optional[bool] = None,
    limit: int = 100,
    identity: Identity = Depends(admin_area),
):
    return {"logs": get_rbac_logs(role=role, resource=resource, allowed=allowed, limit=limit)}


# ---------------------- Misc ----------------------
@app.get("/")
def read_root():
    return {"message": "FoodONtracks API"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    status = {"backend": "ok", "database": "ok", "audit_write_failures": audit.failed_writes()}
    try:
        db.ping()
    except PersistenceError as exc:
        status["database"] = "unavailable"
        return JSONResponse(status_code=503, content={**status, "retriable": exc.retriable})
    return status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
