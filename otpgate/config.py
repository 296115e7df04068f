from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any, Callable, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpgate.logging import get_logger

logger = get_logger(__name__)

# Publicly documented sample secret. Tokens signed with it are rejected in any
# hardened environment.
DEV_PLACEHOLDER_SECRET = "CHANGE_THIS_IN_PRODUCTION_USE_ENV_VAR"

ENVIRONMENT_VARIABLE = "APP_ENV"

# Explicit allow-list of non-production environment values. ``None`` covers an
# unset variable. Anything not listed here is treated as hardened.
NON_PRODUCTION_ENVIRONMENTS: frozenset[Optional[str]] = frozenset(
    {"development", "test", "", None}
)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a ``<integer><unit>`` duration where unit is one of s, m, h, d.

    Raises:
        ValueError: If the string does not match the grammar or is zero.
    """
    if not isinstance(value, str):
        raise ValueError(f"duration must be a string, got {type(value).__name__}")
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid duration {value!r}; expected <integer><s|m|h|d>")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"duration {value!r} must be positive")
    return amount * _DURATION_UNITS[match.group(2)]


def duration_seconds(value: str) -> int:
    return int(parse_duration(value).total_seconds())


class EnvironmentIndicator:
    """Deployment environment read at call time.

    The value is never cached so a process can be re-pointed (or a test can
    monkeypatch the variable) without rebuilding services.
    """

    def __init__(
        self,
        variable: str = ENVIRONMENT_VARIABLE,
        *,
        reader: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.variable = variable
        self._reader = reader or os.environ.get

    @property
    def value(self) -> Optional[str]:
        return self._reader(self.variable)

    def is_non_production(self) -> bool:
        """True only for explicitly allow-listed non-production values."""
        raw = self.value
        normalized = raw.strip().lower() if isinstance(raw, str) else raw
        return normalized in NON_PRODUCTION_ENVIRONMENTS

    def is_hardened(self) -> bool:
        return not self.is_non_production()


class FixedEnvironment(EnvironmentIndicator):
    """Environment indicator pinned to a constant value."""

    def __init__(self, value: Optional[str]) -> None:
        super().__init__(reader=lambda _name: value)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP authentication service."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(DEV_PLACEHOLDER_SECRET, "JWT_SECRET")
    jwt_issuer: str = env_field("otpgate", "JWT_ISSUER")
    jwt_audience: str = env_field("event-platform", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        "4h", "ACCESS_TOKEN_TTL", description="Access token lifetime, e.g. 4h"
    )
    refresh_token_ttl: str = env_field(
        "7d", "REFRESH_TOKEN_TTL", description="Refresh token lifetime, e.g. 7d"
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Replace the refresh token on every successful refresh",
    )
    auth_path_prefix: str = env_field("/v1/auth", "AUTH_PATH_PREFIX")

    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl: str = env_field("10m", "OTP_TTL")
    otp_bypass_code: str | None = env_field(
        "123456",
        "OTP_BYPASS_CODE",
        description="Static code accepted only in allow-listed non-production environments",
    )

    otp_rate_limit_identity: int = env_field(3, "OTP_RATE_LIMIT_IDENTITY", ge=1)
    otp_rate_limit_origin: int = env_field(5, "OTP_RATE_LIMIT_ORIGIN", ge=1)
    otp_rate_limit_window: str = env_field("15m", "OTP_RATE_LIMIT_WINDOW")
    otp_rate_limit_dev_multiplier: int = env_field(
        10, "OTP_RATE_LIMIT_DEV_MULTIPLIER", ge=1
    )

    suspension_max_failures: int = env_field(5, "SUSPENSION_MAX_FAILURES", ge=1)
    suspension_lockout: str = env_field("5m", "SUSPENSION_LOCKOUT")
    suspension_failure_window: str = env_field("5m", "SUSPENSION_FAILURE_WINDOW")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Event Platform", "EMAIL_FROM_NAME")
    email_send_timeout: str = env_field("10s", "EMAIL_SEND_TIMEOUT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "otp_ttl",
        "otp_rate_limit_window",
        "suspension_lockout",
        "suspension_failure_window",
        "email_send_timeout",
    )
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value.strip()

    @field_validator("auth_path_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("auth_path_prefix must start with '/'")
        return value.rstrip("/") or "/"

    @field_validator("otp_bypass_code")
    @classmethod
    def _blank_bypass_disables(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
