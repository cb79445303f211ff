"""
Audit trail for state changes.

Audit writes happen after the change they describe has been committed and
never fail or roll back that change. A failed write is reported on the
`foodontracks.alerts` logger and counted so /health can surface it.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from database import Database
from errors import AppError
from schemas import AuditLog

alert_logger = logging.getLogger("foodontracks.alerts")

_failures = 0
_failures_lock = threading.Lock()


def failed_writes() -> int:
    return _failures


def record(
    db: Database,
    action: str,
    target_type: str,
    target_id: Optional[str],
    identity: Any = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
) -> Optional[str]:
    """Write one audit entry. Returns its id, or None when the write failed."""
    global _failures
    entry = AuditLog(
        action=action,
        performed_by=identity.user_id if identity is not None else None,
        performed_by_role=identity.role.value if identity is not None else None,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
        success=success,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        return db.create_document("auditlog", entry)
    except AppError as exc:
        with _failures_lock:
            _failures += 1
        alert_logger.error(
            "audit_write_failed action=%s target=%s:%s details=%s",
            action,
            target_type,
            target_id,
            details,
            exc_info=exc,
        )
        return None
