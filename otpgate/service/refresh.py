from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from otpgate.config import Settings, parse_duration
from otpgate.logging import get_logger
from otpgate.service.errors import ErrorKind
from otpgate.storage.models import RefreshRecord

logger = get_logger(__name__)


class RefreshStore(Protocol):
    async def put_refresh(self, token_key: str, record: RefreshRecord) -> None:
        ...

    async def get_refresh(self, token_key: str) -> Optional[RefreshRecord]:
        ...

    async def delete_refresh(self, token_key: str) -> bool:
        ...

    async def delete_refresh_for_identity(self, identity: str) -> int:
        ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    expires_at: datetime
    max_age: int


@dataclass(frozen=True)
class RefreshCheck:
    valid: bool
    identity: Optional[str] = None
    reason: Optional[ErrorKind] = None


def refresh_token_key(token: str) -> str:
    """Storage key for a refresh token; the raw token is never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenService:
    """Opaque, revocable refresh tokens mapped to an identity."""

    def __init__(
        self,
        store: RefreshStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = parse_duration(settings.refresh_token_ttl)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def issue(self, identity: str) -> IssuedRefreshToken:
        token = secrets.token_hex(64)
        now = self._clock()
        record = RefreshRecord(identity=identity, issued_at=now, expires_at=now + self.ttl)
        await self.store.put_refresh(refresh_token_key(token), record)
        return IssuedRefreshToken(token, record.expires_at, int(self.ttl.total_seconds()))

    async def validate(self, token: Optional[str]) -> RefreshCheck:
        if not token or not isinstance(token, str) or not token.strip():
            return RefreshCheck(False, reason=ErrorKind.INVALID_INPUT)
        key = refresh_token_key(token.strip())
        record = await self.store.get_refresh(key)
        if record is None:
            return RefreshCheck(False, reason=ErrorKind.NOT_FOUND)
        if record.is_expired(self._clock()):
            await self.store.delete_refresh(key)
            return RefreshCheck(False, identity=record.identity, reason=ErrorKind.EXPIRED)
        return RefreshCheck(True, identity=record.identity)

    async def invalidate(self, token: Optional[str]) -> bool:
        if not token or not isinstance(token, str) or not token.strip():
            return False
        return await self.store.delete_refresh(refresh_token_key(token.strip()))

    async def invalidate_all(self, identity: str) -> int:
        removed = await self.store.delete_refresh_for_identity(identity)
        logger.info("refresh_tokens_revoked", identity=identity, count=removed)
        return removed
