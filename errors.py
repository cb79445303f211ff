"""
Error taxonomy shared by every layer of the API.

Each error carries a stable machine-readable code (E### catalogue), a
human-readable message and the HTTP status the handler boundary answers with.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

# E001-E099 validation, E100-E199 auth, E200-E299 not found,
# E300-E399 database, E400-E499 business rules, E500-E599 internal
ERROR_CODES = {
    "VALIDATION_ERROR": "E001",
    "INVALID_ID": "E007",
    "UNAUTHORIZED": "E100",
    "FORBIDDEN": "E101",
    "INVALID_TOKEN": "E102",
    "TOKEN_EXPIRED": "E103",
    "INVALID_CREDENTIALS": "E104",
    "NOT_FOUND": "E200",
    "DATABASE_FAILURE": "E300",
    "TRANSACTION_FAILED": "E303",
    "DUPLICATE_ENTRY": "E305",
    "INSUFFICIENT_STOCK": "E400",
    "INVALID_ORDER_STATUS": "E403",
    "BUSINESS_RULE": "E499",
    "INTERNAL_ERROR": "E500",
}


class AppError(Exception):
    status_code = 500
    code = ERROR_CODES["INTERNAL_ERROR"]

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return error_body(self.message, self.code, self.details)


class AuthenticationError(AppError):
    """Missing, malformed, expired or wrongly signed credential."""

    status_code = 401
    code = ERROR_CODES["UNAUTHORIZED"]


# Token verification failures are reported under this name as well.
AuthError = AuthenticationError


class AuthorizationError(AppError):
    """Valid identity without the role or permission required."""

    status_code = 403
    code = ERROR_CODES["FORBIDDEN"]


class ValidationError(AppError):
    status_code = 400
    code = ERROR_CODES["VALIDATION_ERROR"]


class NotFoundError(AppError):
    status_code = 404
    code = ERROR_CODES["NOT_FOUND"]


class ConflictError(AppError):
    status_code = 409
    code = ERROR_CODES["DUPLICATE_ENTRY"]


class BusinessRuleError(AppError):
    status_code = 400
    code = ERROR_CODES["BUSINESS_RULE"]


class InsufficientStockError(BusinessRuleError):
    code = ERROR_CODES["INSUFFICIENT_STOCK"]


class ForbiddenTransitionError(BusinessRuleError):
    """A status change rejected by the role allow-list or the state table.

    `reason` is "role" or "state"; the role rejection answers 403, the state
    table rejection answers 400.
    """

    code = ERROR_CODES["INVALID_ORDER_STATUS"]

    def __init__(self, message: str, reason: str = "state", details: Any = None):
        super().__init__(message, details=details)
        self.reason = reason
        self.status_code = 403 if reason == "role" else 400


class PersistenceError(AppError):
    """Underlying data-store failure. `retriable` tells callers whether a retry may succeed."""

    status_code = 500
    code = ERROR_CODES["DATABASE_FAILURE"]

    def __init__(self, message: str, retriable: bool = False, code: Optional[str] = None, details: Any = None):
        super().__init__(message, code=code, details=details)
        self.retriable = retriable


class TransactionAbortedError(PersistenceError):
    code = ERROR_CODES["TRANSACTION_FAILED"]


class ConfigurationError(AppError):
    pass


def error_body(message: str, code: str, details: Any = None) -> Dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "error": {"code": code, "details": details},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
