from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from otpgate.service.errors import ErrorKind

_VALID_ERROR_CODES = frozenset({kind.value for kind in ErrorKind} | {"server_error"})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OTPRequest(BaseModel):
    # Shape is checked by the service so every caller gets the same error kind
    email: str = Field(..., max_length=320)


class OTPVerifyRequest(BaseModel):
    email: str = Field(..., max_length=320)
    code: str = Field(..., max_length=16)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ChallengeResponse(BaseModel):
    email: str
    expires_at: datetime
    delivered: bool
    dev_code: Optional[str] = None


class AuthResponse(BaseModel):
    email: str
    access_token: str
    access_expires_at: datetime
    token_type: str = "bearer"
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class LogoutResponse(BaseModel):
    revoked: int


class MeResponse(BaseModel):
    email: str
    expires_at: datetime
    claims: dict[str, Any] = Field(default_factory=dict)
