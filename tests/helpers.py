"""Shared fakes for service-level tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from warden.storage.models import MFAPurpose


class ManualClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Captures outgoing codes instead of sending them."""

    def __init__(self, *, deliver: bool = True, fail: bool = False):
        self.sent: List[Tuple[str, str, MFAPurpose]] = []
        self.deliver = deliver
        self.fail = fail

    def send_mfa_code(self, to_email, code, *, purpose, expires_minutes):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((to_email, code, purpose))
        return self.deliver

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]
