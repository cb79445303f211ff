"""
Authorization guard for route handlers.

`require(...)` builds a FastAPI dependency that runs before the handler:
1. take the bearer token from the Authorization header, else the
   `accessToken` cookie;
2. verify it (401 on absence or any verification failure);
3. check the declared role set, (resource, action) permission and/or minimum
   role level (403 on failure);
4. hand the decoded Identity to the handler.

Every decision is logged and kept in an in-memory ring buffer for the admin
RBAC log endpoint.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import AuthenticationError, AuthorizationError
from roles import Role, has_minimum_role_level, has_permission
from tokens import ACCESS_COOKIE, Identity, verify_access_token

MAX_DECISIONS = 1000

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

_decisions: deque = deque(maxlen=MAX_DECISIONS)
_decisions_lock = threading.Lock()


def log_decision(
    allowed: bool,
    identity: Optional[Identity],
    resource: str,
    permission: str,
    reason: str,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    entry = {
        "allowed": allowed,
        "user_id": identity.user_id if identity else None,
        "role": identity.role.value if identity else "ANONYMOUS",
        "resource": resource,
        "permission": permission,
        "reason": reason,
        "ip": _client_ip(request),
        "path": request.url.path if request is not None else None,
        "timestamp": datetime.now(timezone.utc),
    }
    with _decisions_lock:
        _decisions.append(entry)
    level = logging.INFO if allowed else logging.WARNING
    logger.log(
        level,
        "rbac_decision allowed=%s role=%s resource=%s permission=%s reason=%s path=%s",
        allowed,
        entry["role"],
        resource,
        permission,
        reason,
        entry["path"],
    )
    return entry


def _client_ip(request: Optional[Request]) -> str:
    if request is None:
        return "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_rbac_logs(
    role: Optional[str] = None,
    resource: Optional[str] = None,
    allowed: Optional[bool] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    with _decisions_lock:
        entries = list(_decisions)
    if role:
        entries = [e for e in entries if e["role"] == role]
    if resource:
        entries = [e for e in entries if e["resource"] == resource]
    if allowed is not None:
        entries = [e for e in entries if e["allowed"] == allowed]
    return list(reversed(entries))[:limit]


def clear_rbac_logs() -> None:
    with _decisions_lock:
        _decisions.clear()


def extract_token(request: Request, creds: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if creds is not None and creds.credentials:
        return creds.credentials
    return request.cookies.get(ACCESS_COOKIE) or None


def require(
    resource: Optional[str] = None,
    action: Optional[str] = None,
    roles: Optional[Iterable[Role]] = None,
    min_role: Optional[Role] = None,
) -> Callable[..., Identity]:
    """Build a guard dependency. With no arguments it only authenticates."""
    allowed_roles = frozenset(roles) if roles else None
    label = resource or ("admin" if min_role else "authenticated")
    permission = action or ("level>=" + min_role.value if min_role else "authenticated")

    def guard(
        request: Request, creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
    ) -> Identity:
        token = extract_token(request, creds)
        if not token:
            log_decision(False, None, label, permission, "No authentication token", request)
            raise AuthenticationError("Authentication required. Please log in.")
        try:
            identity = verify_access_token(token)
        except AuthenticationError as exc:
            log_decision(False, None, label, permission, exc.message, request)
            raise

        if allowed_roles is not None and identity.role not in allowed_roles:
            log_decision(False, identity, label, permission, "Role not allowed", request)
            raise AuthorizationError(
                "Access denied for your role",
                details={"allowed_roles": sorted(r.value for r in allowed_roles), "role": identity.role.value},
            )
        if resource is not None and action is not None and not has_permission(identity.role, resource, action):
            log_decision(False, identity, label, permission, "Insufficient permissions", request)
            raise AuthorizationError(
                f"Access denied: you do not have permission to {action} {resource}",
                details={"resource": resource, "action": action, "role": identity.role.value},
            )
        if min_role is not None and not has_minimum_role_level(identity.role, min_role):
            log_decision(False, identity, label, permission, "Role level too low", request)
            raise AuthorizationError(f"Access denied: {min_role.value} privileges required")

        log_decision(True, identity, label, permission, "Permission granted", request)
        return identity

    return guard


authenticated = require()
# the one level-only comparison: the admin area
admin_area = require(min_role=Role.ADMIN)
