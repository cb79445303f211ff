import pytest
from fastapi import Depends, FastAPI
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient
from starlette.requests import Request

import guards
from conftest import bearer, identity_for
from errors import ERROR_CODES, AppError, AuthenticationError, AuthorizationError
from main import handle_app_error
from roles import ACTIONS, PERMISSION_MATRIX, RESOURCES, Role
from tokens import ACCESS_COOKIE, Identity, create_access_token, create_refresh_token


@pytest.fixture
def calls():
    return []


@pytest.fixture
def guarded(calls):
    """Small app whose handlers record every invocation."""
    guards.clear_rbac_logs()
    app = FastAPI()
    app.add_exception_handler(AppError, handle_app_error)

    @app.get("/whoami")
    def whoami(identity: Identity = Depends(guards.authenticated)):
        calls.append(identity.user_id)
        return {"user_id": identity.user_id, "role": identity.role.value}

    @app.post("/orders")
    def create(identity: Identity = Depends(guards.require("orders", "create"))):
        calls.append(identity.user_id)
        return {"ok": True}

    @app.get("/delivery-only")
    def delivery_only(identity: Identity = Depends(guards.require(roles=[Role.DELIVERY_GUY]))):
        calls.append(identity.user_id)
        return {"ok": True}

    @app.get("/admin")
    def admin(identity: Identity = Depends(guards.admin_area)):
        calls.append(identity.user_id)
        return {"ok": True}

    return TestClient(app)


def _request(headers=None):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/guarded",
        "headers": headers or [],
        "query_string": b"",
        "client": ("10.0.0.1", 5000),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


class TestAuthentication:
    def test_missing_token_is_401_and_handler_not_run(self, guarded, calls):
        resp = guarded.get("/whoami")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == ERROR_CODES["UNAUTHORIZED"]
        assert calls == []

    def test_invalid_token_is_401(self, guarded, calls):
        resp = guarded.get("/whoami", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == ERROR_CODES["INVALID_TOKEN"]
        assert calls == []

    def test_refresh_token_cannot_be_used_as_bearer(self, guarded, calls):
        token = create_refresh_token(identity_for(Role.ADMIN))
        resp = guarded.get("/whoami", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert calls == []

    def test_cookie_is_accepted(self, guarded):
        customer = identity_for(Role.CUSTOMER)
        guarded.cookies.set(ACCESS_COOKIE, create_access_token(customer))
        resp = guarded.get("/whoami")
        assert resp.status_code == 200
        assert resp.json()["user_id"] == customer.user_id

    def test_header_takes_precedence_over_cookie(self, guarded):
        customer = identity_for(Role.CUSTOMER)
        admin = identity_for(Role.ADMIN)
        guarded.cookies.set(ACCESS_COOKIE, create_access_token(admin))
        resp = guarded.get("/whoami", headers=bearer(customer))
        assert resp.json() == {"user_id": customer.user_id, "role": "CUSTOMER"}


class TestAuthorization:
    def test_permission_allows_listed_role(self, guarded, calls):
        customer = identity_for(Role.CUSTOMER)
        assert guarded.post("/orders", headers=bearer(customer)).status_code == 200
        assert calls == [customer.user_id]

    def test_permission_denies_unlisted_role(self, guarded, calls):
        resp = guarded.post("/orders", headers=bearer(identity_for(Role.DELIVERY_GUY)))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == ERROR_CODES["FORBIDDEN"]
        assert calls == []

    def test_role_set(self, guarded, calls):
        assert guarded.get("/delivery-only", headers=bearer(identity_for(Role.ADMIN))).status_code == 403
        assert guarded.get("/delivery-only", headers=bearer(identity_for(Role.DELIVERY_GUY))).status_code == 200
        assert len(calls) == 1

    def test_admin_area_is_level_gated(self, guarded):
        assert guarded.get("/admin", headers=bearer(identity_for(Role.RESTAURANT_OWNER))).status_code == 403
        assert guarded.get("/admin", headers=bearer(identity_for(Role.ADMIN))).status_code == 200

    def test_every_unlisted_pair_is_denied(self):
        """Default deny across the whole (role, resource, action) space."""
        for role in Role:
            creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=create_access_token(identity_for(role)))
            for resource in RESOURCES:
                allowed = PERMISSION_MATRIX[resource][role]
                for action in ACTIONS:
                    guard = guards.require(resource, action)
                    if action in allowed or "manage" in allowed:
                        assert guard(_request(), creds).role is role
                    else:
                        with pytest.raises(AuthorizationError):
                            guard(_request(), creds)

    def test_guard_raises_authentication_error_without_credentials(self):
        with pytest.raises(AuthenticationError):
            guards.require("orders", "read")(_request(), None)


class TestDecisionLog:
    def test_decisions_are_recorded(self, guarded):
        guarded.get("/whoami")
        guarded.post("/orders", headers=bearer(identity_for(Role.DELIVERY_GUY)))
        guarded.post("/orders", headers=bearer(identity_for(Role.CUSTOMER)))

        denied = guards.get_rbac_logs(allowed=False)
        assert len(denied) == 2
        assert {d["role"] for d in denied} == {"ANONYMOUS", "DELIVERY_GUY"}
        granted = guards.get_rbac_logs(allowed=True, resource="orders")
        assert granted[0]["role"] == "CUSTOMER"
        assert granted[0]["path"] == "/orders"

    def test_forwarded_for_is_used_as_client_ip(self):
        guards.clear_rbac_logs()
        request = _request([(b"x-forwarded-for", b"203.0.113.9, 10.0.0.1")])
        with pytest.raises(AuthenticationError):
            guards.authenticated(request, None)
        assert guards.get_rbac_logs()[0]["ip"] == "203.0.113.9"
