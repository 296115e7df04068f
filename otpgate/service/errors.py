from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error kinds surfaced by the authentication core."""

    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"
    SUSPENDED = "suspended"
    CONFIGURATION_ERROR = "configuration_error"
    DELIVERY_FAILED = "delivery_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    UNAUTHORIZED = "unauthorized"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an ``ErrorKind`` (exposed as ``error_code``) and a
    default HTTP status. ``detail`` carries machine-readable metadata such as
    ``retry_after`` for rate limiting and suspension.
    """

    status_code: int = 400
    error_code: str = ErrorKind.INVALID_INPUT.value

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.error_code)


class InvalidInputError(ServiceError):
    """Malformed identity or code (400)."""
    status_code = 400
    error_code = ErrorKind.INVALID_INPUT.value


class NotFoundError(ServiceError):
    """No live challenge or refresh token (400)."""
    status_code = 400
    error_code = ErrorKind.NOT_FOUND.value


class MismatchError(ServiceError):
    """Wrong one-time code (400)."""
    status_code = 400
    error_code = ErrorKind.MISMATCH.value


class ExpiredError(ServiceError):
    """Challenge or token past its lifetime."""
    status_code = 400
    error_code = ErrorKind.EXPIRED.value


class MalformedTokenError(ServiceError):
    """Token structure or signature invalid (401)."""
    status_code = 401
    error_code = ErrorKind.MALFORMED.value


class AuthenticationError(ServiceError):
    """Authentication missing (401)."""
    status_code = 401
    error_code = ErrorKind.UNAUTHORIZED.value


class SessionInvalidError(AuthenticationError):
    """Refresh failed; the caller must discard cached tokens and start over."""

    def __init__(self, message: str, *, reason: ErrorKind, **kwargs) -> None:
        detail = {"reason": reason.value, "clear_session": True}
        detail.update(kwargs.pop("detail", None) or {})
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class RateLimitedError(ServiceError):
    """Too many challenge requests (429)."""
    status_code = 429
    error_code = ErrorKind.RATE_LIMITED.value

    @property
    def retry_after(self) -> int:
        return int(self.detail.get("retry_after", 0))


class SuspendedError(ServiceError):
    """Identity temporarily locked out after repeated failures (403)."""
    status_code = 403
    error_code = ErrorKind.SUSPENDED.value

    @property
    def retry_after(self) -> int:
        return int(self.detail.get("retry_after", 0))


class ConfigurationError(ServiceError):
    """Missing or unsafe signing secret (500). Indicates a deployment defect."""
    status_code = 500
    error_code = ErrorKind.CONFIGURATION_ERROR.value


class DeliveryFailedError(ServiceError):
    """Email capability failed to deliver the code (502)."""
    status_code = 502
    error_code = ErrorKind.DELIVERY_FAILED.value


ERRORS_BY_KIND: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.INVALID_INPUT: InvalidInputError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.MISMATCH: MismatchError,
    ErrorKind.EXPIRED: ExpiredError,
    ErrorKind.MALFORMED: MalformedTokenError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.SUSPENDED: SuspendedError,
    ErrorKind.CONFIGURATION_ERROR: ConfigurationError,
    ErrorKind.DELIVERY_FAILED: DeliveryFailedError,
    ErrorKind.UNAUTHORIZED: AuthenticationError,
}


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidInputError",
    "NotFoundError",
    "MismatchError",
    "ExpiredError",
    "MalformedTokenError",
    "AuthenticationError",
    "SessionInvalidError",
    "RateLimitedError",
    "SuspendedError",
    "ConfigurationError",
    "DeliveryFailedError",
    "ERRORS_BY_KIND",
]
