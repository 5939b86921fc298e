from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from warden.logging import get_logger
from warden.storage.models import AuditEntry, AuditStatus

logger = get_logger(__name__)


class AuditSink(Protocol):
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...


@dataclass(frozen=True)
class RequestMeta:
    """Network origin of the request that caused an audited event."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecorder:
    """Appends security events to the audit sink.

    A failed write is logged and dropped: the user-facing flow never fails
    because the audit trail could not be written.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        action: str,
        status: AuditStatus,
        *,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Optional[AuditEntry]:
        meta = meta or RequestMeta()
        entry = AuditEntry(
            action=action,
            status=AuditStatus(status),
            user_id=user_id,
            user_email=user_email,
            details=dict(details or {}),
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        try:
            self.sink.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                status=entry.status.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        logger.info("audit_event", action=action, status=entry.status.value, user_id=user_id)
        return entry

    def success(self, action: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.record(action, AuditStatus.SUCCESS, **kwargs)

    def failure(self, action: str, **kwargs: Any) -> Optional[AuditEntry]:
        return self.record(action, AuditStatus.FAILURE, **kwargs)
