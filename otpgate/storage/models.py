from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class Challenge:
    identity: str
    code: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, identity: str, code: str, ttl: timedelta, *, now: datetime
    ) -> "Challenge":
        return cls(identity=identity, code=code, issued_at=now, expires_at=now + ttl)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class RateRule:
    """One counter to check: ``limit`` requests per ``window_seconds``."""

    key: str
    limit: int
    window_seconds: int


@dataclass
class RateWindow:
    key: str
    count: int
    window_start: datetime
    window_seconds: int
    limit: int
    blocked: bool = False

    @property
    def resets_at(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass
class SuspensionRecord:
    identity: str
    consecutive_failures: int = 0
    suspended_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def is_suspended(self, now: datetime) -> bool:
        return self.suspended_until is not None and now < self.suspended_until


@dataclass
class RefreshRecord:
    identity: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
