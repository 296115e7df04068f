from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from otpgate.config import (
    DEV_PLACEHOLDER_SECRET,
    EnvironmentIndicator,
    Settings,
    parse_duration,
)
from otpgate.logging import get_logger
from otpgate.service.errors import (
    ConfigurationError,
    ExpiredError,
    MalformedTokenError,
)

logger = get_logger(__name__)

ACCESS_COOKIE_NAME = "access_token"
REFRESH_COOKIE_NAME = "refresh_token"

_RESERVED_CLAIMS = {"iss", "aud", "sub", "iat", "exp", "jti", "token_type"}


@dataclass(frozen=True)
class MintedToken:
    token: str
    expires_at: datetime
    max_age: int


@dataclass(frozen=True)
class CookieOptions:
    path: str
    max_age: int
    httponly: bool = True
    samesite: str = "strict"
    secure: bool = True


def extract_token(
    cookie_value: Optional[str], authorization: Optional[str]
) -> Optional[str]:
    """Return the access token from the cookie, else from a Bearer header."""
    if cookie_value and cookie_value.strip():
        return cookie_value.strip()
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class TokenIssuer:
    """Mints and verifies HS256 access tokens.

    The signing secret is re-checked on every call against the current
    environment: an empty secret, or the public development placeholder in a
    hardened environment, raises ``ConfigurationError`` instead of signing.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        environment: Optional[EnvironmentIndicator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.environment = environment or EnvironmentIndicator()
        self.ttl = parse_duration(settings.access_token_ttl)
        self.refresh_ttl = parse_duration(settings.refresh_token_ttl)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def ensure_configured(self) -> str:
        """Return the usable signing secret or raise ``ConfigurationError``."""
        secret = self.settings.jwt_secret
        if not secret or not secret.strip():
            logger.critical("jwt_secret_missing")
            raise ConfigurationError("service misconfigured")
        if secret == DEV_PLACEHOLDER_SECRET and self.environment.is_hardened():
            logger.critical(
                "jwt_secret_placeholder_in_hardened_environment",
                environment=self.environment.value,
            )
            raise ConfigurationError("service misconfigured")
        return secret

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(self, claims: Optional[dict[str, Any]] = None, *, subject: str) -> MintedToken:
        secret = self.ensure_configured()
        now = self._clock()
        expires_at = now + self.ttl
        payload = {
            key: value for key, value in (claims or {}).items() if key not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": subject,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": str(uuid.uuid4()),
                "token_type": "access",
            }
        )
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(secret, signing_input)}"
        return MintedToken(token, expires_at, int(self.ttl.total_seconds()))

    def verify(self, token: Optional[str]) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises:
            MalformedTokenError: bad structure, signature, algorithm, issuer,
                audience or token type.
            ExpiredError: ``exp`` is at or before now (401).
            ConfigurationError: the signing secret is unusable.
        """
        secret = self.ensure_configured()
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token structure invalid") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header invalid") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("token algorithm not accepted")

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedTokenError("token signature invalid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload invalid") from None
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload invalid")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("token issuer invalid")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedTokenError("token audience invalid")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise MalformedTokenError("token type invalid")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("token expiry invalid") from None
        if exp_ts <= self._clock().timestamp():
            raise ExpiredError("token expired", status_code=401)
        return payload

    def _secure_cookies(self) -> bool:
        return self.environment.is_hardened()

    def access_cookie_options(self) -> CookieOptions:
        return CookieOptions(
            path="/",
            max_age=int(self.ttl.total_seconds()),
            secure=self._secure_cookies(),
        )

    def refresh_cookie_options(self) -> CookieOptions:
        return CookieOptions(
            path=self.settings.auth_path_prefix,
            max_age=int(self.refresh_ttl.total_seconds()),
            secure=self._secure_cookies(),
        )
