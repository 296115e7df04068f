from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from otpgate.config import Settings, parse_duration
from otpgate.logging import get_logger, log_auth_event
from otpgate.storage.models import SuspensionRecord

logger = get_logger(__name__)


class SuspensionStore(Protocol):
    async def get_suspension(self, identity: str) -> Optional[SuspensionRecord]:
        ...

    async def record_suspension_failure(
        self,
        identity: str,
        *,
        now: datetime,
        max_failures: int,
        lockout: timedelta,
        failure_window: timedelta,
    ) -> SuspensionRecord:
        ...

    async def clear_suspension(self, identity: str) -> None:
        ...


@dataclass(frozen=True)
class SuspensionStatus:
    suspended: bool
    until: Optional[datetime] = None

    def retry_after(self, now: datetime) -> int:
        if not self.suspended or self.until is None:
            return 0
        return max(1, math.ceil((self.until - now).total_seconds()))


@dataclass(frozen=True)
class FailureResult:
    suspended: bool
    attempts: int
    until: Optional[datetime] = None


class SuspensionTracker:
    """Locks an identity out after repeated failed code redemptions."""

    def __init__(
        self,
        store: SuspensionStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_failures = settings.suspension_max_failures
        self.lockout = parse_duration(settings.suspension_lockout)
        self.failure_window = parse_duration(settings.suspension_failure_window)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def is_suspended(self, identity: str) -> SuspensionStatus:
        record = await self.store.get_suspension(identity)
        if record is None or not record.is_suspended(self._clock()):
            return SuspensionStatus(False)
        return SuspensionStatus(True, record.suspended_until)

    async def record_failure(self, identity: str) -> FailureResult:
        now = self._clock()
        record = await self.store.record_suspension_failure(
            identity,
            now=now,
            max_failures=self.max_failures,
            lockout=self.lockout,
            failure_window=self.failure_window,
        )
        suspended = record.is_suspended(now)
        if suspended:
            log_auth_event(
                "warning",
                "identity_suspended",
                identity=identity,
                attempts=record.consecutive_failures,
                suspended_until=record.suspended_until.isoformat(),
            )
        return FailureResult(
            suspended=suspended,
            attempts=record.consecutive_failures,
            until=record.suspended_until if suspended else None,
        )

    async def reset(self, identity: str) -> None:
        await self.store.clear_suspension(identity)
