from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from otpgate.logging import get_logger
from otpgate.storage.models import (
    Challenge,
    RateRule,
    RateWindow,
    RefreshRecord,
    SuspensionRecord,
)


class MemoryStore:
    """Process-local backing store for challenges, rate windows, suspensions
    and refresh tokens.

    Every public method runs its read-modify-write under one re-entrant lock
    and never awaits while holding it, so each call is atomic with respect to
    concurrent request handlers (threads or tasks). Records are returned as
    copies; callers cannot mutate stored state behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.challenges: Dict[str, Challenge] = {}
        self.rate_windows: Dict[str, RateWindow] = {}
        self.suspensions: Dict[str, SuspensionRecord] = {}
        self.refresh_tokens: Dict[str, RefreshRecord] = {}
        self._data_lock = threading.RLock()

    # -- challenges -----------------------------------------------------

    async def put_challenge(self, challenge: Challenge) -> None:
        with self._data_lock:
            # Replace unconditionally; there is no grace period for the old code
            self.challenges.pop(challenge.identity, None)
            self.challenges[challenge.identity] = replace(challenge)

    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(identity)
            return replace(challenge) if challenge else None

    async def delete_challenge(self, identity: str, *, code: Optional[str] = None) -> bool:
        """Delete the challenge; with ``code`` only if it still holds that code."""
        with self._data_lock:
            current = self.challenges.get(identity)
            if current is None:
                return False
            if code is not None and current.code != code:
                return False
            del self.challenges[identity]
            return True

    # -- rate windows ---------------------------------------------------

    async def consume_rate_windows(
        self, rules: Sequence[RateRule], now: datetime
    ) -> List[RateWindow]:
        """Check every counter and increment all of them only if none is full."""
        with self._data_lock:
            windows: List[RateWindow] = []
            for rule in rules:
                current = self.rate_windows.get(rule.key)
                if current is None or now >= current.window_start + timedelta(
                    seconds=current.window_seconds
                ):
                    window = RateWindow(
                        key=rule.key,
                        count=0,
                        window_start=now,
                        window_seconds=rule.window_seconds,
                        limit=rule.limit,
                    )
                else:
                    window = replace(current, limit=rule.limit)
                window.blocked = window.count >= rule.limit
                windows.append(window)

            if not any(w.blocked for w in windows):
                for window in windows:
                    window.count += 1
                    self.rate_windows[window.key] = replace(window)
            return windows

    # -- suspensions ----------------------------------------------------

    async def get_suspension(self, identity: str) -> Optional[SuspensionRecord]:
        with self._data_lock:
            record = self.suspensions.get(identity)
            return replace(record) if record else None

    async def record_suspension_failure(
        self,
        identity: str,
        *,
        now: datetime,
        max_failures: int,
        lockout: timedelta,
        failure_window: timedelta,
    ) -> SuspensionRecord:
        with self._data_lock:
            record = self.suspensions.get(identity)
            if record is None:
                record = SuspensionRecord(identity=identity)
            elif record.is_suspended(now):
                # Lockout timestamp is authoritative; leave the record untouched
                return replace(record)
            elif record.suspended_until is not None:
                record = SuspensionRecord(identity=identity)
            elif (
                record.last_failure_at is not None
                and now - record.last_failure_at >= failure_window
            ):
                record = SuspensionRecord(identity=identity)
            else:
                record = replace(record)

            record.consecutive_failures += 1
            record.last_failure_at = now
            if record.consecutive_failures >= max_failures:
                record.suspended_until = now + lockout
            self.suspensions[identity] = record
            return replace(record)

    async def clear_suspension(self, identity: str) -> None:
        with self._data_lock:
            self.suspensions.pop(identity, None)

    # -- refresh tokens -------------------------------------------------

    async def put_refresh(self, token_key: str, record: RefreshRecord) -> None:
        with self._data_lock:
            self.refresh_tokens[token_key] = replace(record)

    async def get_refresh(self, token_key: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_key)
            return replace(record) if record else None

    async def delete_refresh(self, token_key: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_key, None) is not None

    async def delete_refresh_for_identity(self, identity: str) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, record in self.refresh_tokens.items()
                if record.identity == identity
            ]
            for key in doomed:
                del self.refresh_tokens[key]
            return len(doomed)

    # -- maintenance ----------------------------------------------------

    def reap_expired(self, now: datetime) -> int:
        """Drop every record whose lifetime has ended.

        Expiry is otherwise enforced lazily on read; hosts may call this
        periodically to bound memory.
        """
        cleaned = 0
        with self._data_lock:
            for identity in [k for k, c in self.challenges.items() if c.is_expired(now)]:
                del self.challenges[identity]
                cleaned += 1
            for key in [k for k, w in self.rate_windows.items() if now >= w.resets_at]:
                del self.rate_windows[key]
                cleaned += 1
            for key in [k for k, r in self.refresh_tokens.items() if r.is_expired(now)]:
                del self.refresh_tokens[key]
                cleaned += 1
            stale_suspensions = [
                identity
                for identity, record in self.suspensions.items()
                if not record.is_suspended(now)
                and (record.suspended_until is not None or record.consecutive_failures == 0)
            ]
            for identity in stale_suspensions:
                del self.suspensions[identity]
                cleaned += 1
        if cleaned:
            self.logger.debug("memory_store_reaped", cleaned=cleaned)
        return cleaned
