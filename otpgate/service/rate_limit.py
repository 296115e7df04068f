from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence

from otpgate.config import EnvironmentIndicator, Settings, duration_seconds
from otpgate.logging import get_logger
from otpgate.storage.models import RateRule, RateWindow

logger = get_logger(__name__)

UNKNOWN_ORIGIN = "unknown"


class RateLimitStore(Protocol):
    async def consume_rate_windows(
        self, rules: Sequence[RateRule], now: datetime
    ) -> List[RateWindow]:
        ...


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    blocked_by: tuple[str, ...] = field(default_factory=tuple)
    remaining: int = 0


class RateLimiter:
    """Fixed-window limits on challenge requests per identity and per origin.

    Both counters must pass; they are incremented together in one store call
    only when neither is full, so a rejected request costs nothing.
    Non-production environments get thresholds scaled by
    ``otp_rate_limit_dev_multiplier`` but are never unlimited.
    """

    def __init__(
        self,
        store: RateLimitStore,
        settings: Settings,
        *,
        environment: Optional[EnvironmentIndicator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.environment = environment or EnvironmentIndicator()
        self.window_seconds = duration_seconds(settings.otp_rate_limit_window)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def limits(self) -> tuple[int, int]:
        """Current (identity, origin) thresholds for this environment."""
        identity_limit = self.settings.otp_rate_limit_identity
        origin_limit = self.settings.otp_rate_limit_origin
        if self.environment.is_non_production():
            factor = self.settings.otp_rate_limit_dev_multiplier
            return identity_limit * factor, origin_limit * factor
        return identity_limit, origin_limit

    async def check_and_consume(self, identity: str, origin: Optional[str]) -> RateDecision:
        identity_limit, origin_limit = self.limits()
        rules = [
            RateRule(f"otp:identity:{identity}", identity_limit, self.window_seconds),
            RateRule(f"otp:origin:{origin or UNKNOWN_ORIGIN}", origin_limit, self.window_seconds),
        ]
        now = self._clock()
        windows = await self.store.consume_rate_windows(rules, now)
        blocked = [w for w in windows if w.blocked]
        if not blocked:
            return RateDecision(
                allowed=True, remaining=min(w.remaining for w in windows)
            )

        retry_after = min(
            max(1, math.ceil((w.resets_at - now).total_seconds())) for w in blocked
        )
        scopes = tuple(w.key.split(":")[1] for w in blocked)
        logger.warning(
            "otp_rate_limited",
            blocked_by=scopes,
            retry_after=retry_after,
            identity=identity,
        )
        return RateDecision(allowed=False, retry_after=retry_after, blocked_by=scopes)
