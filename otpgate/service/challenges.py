from __future__ import annotations

import hmac
import re
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from otpgate.config import Settings, parse_duration
from otpgate.logging import get_logger
from otpgate.service.errors import ErrorKind, InvalidInputError
from otpgate.storage.models import Challenge

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_identity(value: str) -> str:
    """Trim, NFKC-normalise and lower-case an email identity."""
    return unicodedata.normalize("NFKC", value).strip().lower()


def validate_identity(value: object) -> str:
    """Return the normalised identity or raise ``InvalidInputError``."""
    if not isinstance(value, str):
        raise InvalidInputError("email must be a string")
    normalized = normalize_identity(value)
    if len(normalized) > 254:
        raise InvalidInputError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise InvalidInputError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise InvalidInputError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise InvalidInputError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidInputError("invalid email address format")
    return normalized


class ChallengeStore(Protocol):
    async def put_challenge(self, challenge: Challenge) -> None:
        ...

    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        ...

    async def delete_challenge(self, identity: str, *, code: Optional[str] = None) -> bool:
        ...


@dataclass(frozen=True)
class ChallengeCheck:
    valid: bool
    reason: Optional[ErrorKind] = None


class ChallengeService:
    """Issues and redeems one-time numeric codes, one live code per identity."""

    def __init__(
        self,
        store: ChallengeStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.width = settings.otp_length
        self.ttl = parse_duration(settings.otp_ttl)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._code_shape = re.compile(rf"[0-9]{{{self.width}}}")

    def generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.width):0{self.width}d}"

    def is_well_formed(self, code: object) -> bool:
        return isinstance(code, str) and bool(self._code_shape.fullmatch(code))

    async def issue(self, identity: str) -> Challenge:
        """Create a fresh challenge, replacing any previous one for ``identity``."""
        identity = validate_identity(identity)
        challenge = Challenge.new(identity, self.generate_code(), self.ttl, now=self._clock())
        await self.store.put_challenge(challenge)
        logger.info("otp_challenge_issued", identity=identity, expires_at=challenge.expires_at.isoformat())
        return challenge

    async def validate(self, identity: str, code: str, *, consume: bool = True) -> ChallengeCheck:
        """Check ``code`` against the live challenge.

        Shape problems are reported as ``INVALID_INPUT`` without touching the
        store. With ``consume`` a successful check removes the challenge using
        compare-and-delete; a caller that loses a race for the same code sees
        ``NOT_FOUND``, as does any replay.
        """
        try:
            identity = validate_identity(identity)
        except InvalidInputError:
            return ChallengeCheck(False, ErrorKind.INVALID_INPUT)
        if not self.is_well_formed(code):
            return ChallengeCheck(False, ErrorKind.INVALID_INPUT)

        challenge = await self.store.get_challenge(identity)
        if challenge is None:
            return ChallengeCheck(False, ErrorKind.NOT_FOUND)
        if challenge.is_expired(self._clock()):
            await self.store.delete_challenge(identity, code=challenge.code)
            return ChallengeCheck(False, ErrorKind.EXPIRED)
        if not hmac.compare_digest(challenge.code.encode(), code.encode()):
            return ChallengeCheck(False, ErrorKind.MISMATCH)
        if consume and not await self.store.delete_challenge(identity, code=challenge.code):
            return ChallengeCheck(False, ErrorKind.NOT_FOUND)
        return ChallengeCheck(True)

    async def invalidate(self, identity: str) -> bool:
        try:
            identity = validate_identity(identity)
        except InvalidInputError:
            return False
        return await self.store.delete_challenge(identity)
