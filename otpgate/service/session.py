from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from otpgate.config import EnvironmentIndicator, Settings, duration_seconds
from otpgate.logging import get_logger, log_auth_event
from otpgate.service.challenges import ChallengeService, validate_identity
from otpgate.service.email import DeliveryResult, EmailSender
from otpgate.service.errors import (
    ERRORS_BY_KIND,
    AuthenticationError,
    DeliveryFailedError,
    ErrorKind,
    InvalidInputError,
    RateLimitedError,
    SessionInvalidError,
    SuspendedError,
)
from otpgate.service.rate_limit import RateLimiter
from otpgate.service.refresh import RefreshTokenService
from otpgate.service.suspension import SuspensionStatus, SuspensionTracker
from otpgate.service.tokens import TokenIssuer, extract_token

logger = get_logger(__name__)

_FAILURE_MESSAGES = {
    ErrorKind.NOT_FOUND: "no active code for this email; request a new one",
    ErrorKind.EXPIRED: "code expired; request a new one",
    ErrorKind.MISMATCH: "invalid code",
}


@dataclass(frozen=True)
class ChallengeReceipt:
    identity: str
    expires_at: datetime
    delivered: bool
    dev_code: Optional[str] = None


@dataclass(frozen=True)
class AuthTokens:
    identity: str
    access_token: str
    access_expires_at: datetime
    access_max_age: int
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None
    refresh_max_age: Optional[int] = None


class SessionService:
    """Composes challenges, abuse guards, access and refresh tokens into the
    sign-in, refresh and logout flows."""

    def __init__(
        self,
        *,
        settings: Settings,
        challenges: ChallengeService,
        rate_limiter: RateLimiter,
        suspensions: SuspensionTracker,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenService,
        email: EmailSender,
        environment: Optional[EnvironmentIndicator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.challenges = challenges
        self.rate_limiter = rate_limiter
        self.suspensions = suspensions
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.email = email
        self.environment = environment or EnvironmentIndicator()
        self.send_timeout = duration_seconds(settings.email_send_timeout)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _raise_if_suspended(self, identity: str) -> None:
        status = await self.suspensions.is_suspended(identity)
        if status.suspended:
            retry_after = status.retry_after(self._clock())
            raise SuspendedError(
                "too many failed attempts; try again later",
                detail={"retry_after": retry_after},
            )

    async def _deliver(self, identity: str, code: str) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                self.email.send_otp(identity, code), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            logger.error("otp_delivery_timeout", identity=identity, timeout=self.send_timeout)
            return DeliveryResult(False, "timeout")
        except Exception as exc:
            logger.error(
                "otp_delivery_error",
                identity=identity,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryResult(False, type(exc).__name__)

    async def request_challenge(self, identity: str, origin: Optional[str]) -> ChallengeReceipt:
        """Issue and deliver a code.

        A rate slot is consumed before the challenge is written, so a store
        failure while issuing still counts against the limit. A delivery
        failure leaves the challenge valid for a retry.
        """
        identity = validate_identity(identity)
        await self._raise_if_suspended(identity)

        decision = await self.rate_limiter.check_and_consume(identity, origin)
        if not decision.allowed:
            raise RateLimitedError(
                "too many code requests; try again later",
                detail={"retry_after": decision.retry_after},
            )

        challenge = await self.challenges.issue(identity)
        result = await self._deliver(identity, challenge.code)
        if not result.success:
            log_auth_event("error", "otp_delivery_failed", identity=identity, reason=result.error)
            raise DeliveryFailedError("could not deliver code; try again")

        log_auth_event("info", "otp_requested", identity=identity, origin=origin)
        return ChallengeReceipt(
            identity=identity,
            expires_at=challenge.expires_at,
            delivered=True,
            dev_code=challenge.code if self.environment.is_non_production() else None,
        )

    def _is_bypass(self, code: object) -> bool:
        bypass = self.settings.otp_bypass_code
        if not bypass or not isinstance(code, str):
            return False
        if not self.environment.is_non_production():
            return False
        return hmac.compare_digest(code.encode(), bypass.encode())

    async def redeem(self, identity: str, code: str) -> AuthTokens:
        """Exchange a code for an access token and a refresh token.

        The token secret is checked before any store is touched. On success the
        challenge is consumed and the suspension count cleared before the
        refresh token is written, so a store failure at that point propagates
        with the code already spent; the caller must request a new one.
        """
        identity = validate_identity(identity)
        # Must run before any store mutation
        self.tokens.ensure_configured()

        if self._is_bypass(code):
            log_auth_event("warning", "otp_bypass_used", identity=identity, environment=self.environment.value)
            await self.suspensions.reset(identity)
            await self.challenges.invalidate(identity)
            return await self._issue_tokens(identity)

        if not self.challenges.is_well_formed(code):
            raise InvalidInputError(f"code must be {self.challenges.width} digits")

        await self._raise_if_suspended(identity)

        check = await self.challenges.validate(identity, code, consume=True)
        if not check.valid:
            if check.reason == ErrorKind.INVALID_INPUT:
                raise InvalidInputError("invalid code")
            failure = await self.suspensions.record_failure(identity)
            log_auth_event(
                "warning",
                "otp_redeem_failed",
                identity=identity,
                reason=check.reason.value,
                attempts=failure.attempts,
            )
            if failure.suspended:
                status = SuspensionStatus(True, failure.until)
                raise SuspendedError(
                    "too many failed attempts; try again later",
                    detail={"retry_after": status.retry_after(self._clock())},
                )
            error_cls = ERRORS_BY_KIND[check.reason]
            raise error_cls(
                _FAILURE_MESSAGES[check.reason],
                detail={
                    "attempts_remaining": max(
                        0, self.suspensions.max_failures - failure.attempts
                    )
                },
            )

        await self.suspensions.reset(identity)
        tokens = await self._issue_tokens(identity)
        log_auth_event("info", "otp_redeemed", identity=identity)
        return tokens

    async def _issue_tokens(self, identity: str) -> AuthTokens:
        access = self.tokens.mint({"email": identity}, subject=identity)
        refresh = await self.refresh_tokens.issue(identity)
        return AuthTokens(
            identity=identity,
            access_token=access.token,
            access_expires_at=access.expires_at,
            access_max_age=access.max_age,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            refresh_max_age=refresh.max_age,
        )

    async def refresh(self, refresh_token: Optional[str]) -> AuthTokens:
        """Mint a new access token from a refresh token.

        Any failure raises ``SessionInvalidError`` so the caller clears its
        cookies. With ``rotate_refresh_tokens`` the presented token is revoked
        and a new one returned; otherwise ``refresh_token`` is None.
        """
        self.tokens.ensure_configured()
        check = await self.refresh_tokens.validate(refresh_token)
        if not check.valid:
            log_auth_event("info", "refresh_rejected", reason=check.reason.value)
            raise SessionInvalidError("session expired; sign in again", reason=check.reason)

        access = self.tokens.mint({"email": check.identity}, subject=check.identity)
        tokens = AuthTokens(
            identity=check.identity,
            access_token=access.token,
            access_expires_at=access.expires_at,
            access_max_age=access.max_age,
        )
        if self.settings.rotate_refresh_tokens:
            if not await self.refresh_tokens.invalidate(refresh_token):
                # Lost a race with a concurrent refresh or logout
                raise SessionInvalidError(
                    "session expired; sign in again", reason=ErrorKind.NOT_FOUND
                )
            rotated = await self.refresh_tokens.issue(check.identity)
            tokens = AuthTokens(
                identity=check.identity,
                access_token=access.token,
                access_expires_at=access.expires_at,
                access_max_age=access.max_age,
                refresh_token=rotated.token,
                refresh_expires_at=rotated.expires_at,
                refresh_max_age=rotated.max_age,
            )
        return tokens

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke one refresh token; other sessions stay valid."""
        revoked = await self.refresh_tokens.invalidate(refresh_token)
        log_auth_event("info", "logout", revoked=revoked)
        return revoked

    async def logout_all(self, identity: str) -> int:
        removed = await self.refresh_tokens.invalidate_all(identity)
        log_auth_event("info", "logout_all", identity=identity, revoked=removed)
        return removed

    def verify(self, token: Optional[str]) -> dict[str, Any]:
        return self.tokens.verify(token)

    def authenticate(
        self, cookie_value: Optional[str], authorization: Optional[str]
    ) -> dict[str, Any]:
        token = extract_token(cookie_value, authorization)
        if token is None:
            raise AuthenticationError("authentication required")
        return self.tokens.verify(token)
