from __future__ import annotations

import traceback
from typing import Any, Dict, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.storage.models import ErrorLevel, ErrorLogEntry

logger = get_logger(__name__)

MAX_STACK_CHARS = 8000


class ErrorLogSink(Protocol):
    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry: ...

    def get_error_log(self, entry_id: str) -> Optional[ErrorLogEntry]: ...

    def list_error_logs(self, **filters: Any) -> Tuple[List[ErrorLogEntry], int]: ...


class ErrorLogRecorder:
    """Keeps server-side failures queryable by operators.

    Like the audit trail, a failed write is logged and dropped so recording an
    error never turns into a second one.
    """

    def __init__(self, sink: ErrorLogSink) -> None:
        self.sink = sink

    def record_exception(
        self,
        exc: BaseException,
        *,
        level: ErrorLevel = ErrorLevel.ERROR,
        route: Optional[str] = None,
        method: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorLogEntry]:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        entry = ErrorLogEntry(
            level=ErrorLevel(level),
            message=str(exc) or type(exc).__name__,
            stack=stack[-MAX_STACK_CHARS:],
            user_id=user_id,
            user_email=user_email,
            route=route,
            method=method.upper() if method else None,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"error_type": type(exc).__name__, **(details or {})},
        )
        try:
            self.sink.append_error_log(entry)
        except Exception as write_exc:
            logger.error(
                "error_log_write_failed",
                route=route,
                error_type=type(write_exc).__name__,
                error=str(write_exc),
            )
            return None
        return entry

    def get(self, entry_id: str) -> Optional[ErrorLogEntry]:
        return self.sink.get_error_log(entry_id)

    def list(self, **filters: Any) -> Tuple[List[ErrorLogEntry], int]:
        return self.sink.list_error_logs(**filters)
