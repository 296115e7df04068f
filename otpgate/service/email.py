from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from otpgate.config import EnvironmentIndicator, Settings, duration_seconds
from otpgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None


class EmailSender(Protocol):
    async def send_otp(self, identity: str, code: str) -> DeliveryResult:
        ...


class EmailService:
    """SMTP delivery for one-time codes.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured, outside production only
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Event Platform",
        timeout: float = 10.0,
        code_ttl_seconds: int = 600,
        environment: Optional[EnvironmentIndicator] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self.code_ttl_seconds = code_ttl_seconds
        self.environment = environment or EnvironmentIndicator()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, environment: Optional[EnvironmentIndicator] = None
    ) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=duration_seconds(settings.email_send_timeout),
            code_ttl_seconds=duration_seconds(settings.otp_ttl),
            environment=environment,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _describe_ttl(self) -> str:
        seconds = self.code_ttl_seconds
        if seconds % 60:
            return f"{seconds} seconds"
        minutes = seconds // 60
        return "1 minute" if minutes == 1 else f"{minutes} minutes"

    def _render(self, code: str) -> tuple[str, str, str]:
        lifetime = self._describe_ttl()
        subject = f"Your sign-in code: {code}"
        text_body = (
            f"Your sign-in code is {code}.\n\n"
            f"It expires in {lifetime}. If you did not request it, ignore this email."
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
    <p>Your sign-in code is:</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600;">{code}</p>
    <p>It expires in {lifetime}. If you did not request it, ignore this email.</p>
</body>
</html>
"""
        return subject, text_body, html_body

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        """Blocking SMTP send. Raises on any transport failure."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def send_otp(self, identity: str, code: str) -> DeliveryResult:
        subject, text_body, html_body = self._render(code)
        if not self.is_configured:
            if not self.environment.is_non_production():
                logger.error(
                    "email_not_configured",
                    to=self._redact_email(identity),
                    environment=self.environment.value,
                )
                return DeliveryResult(False, "email not configured")
            # Dev mode: log instead of sending. The code itself is redacted.
            logger.info("email_dev_mode", to=self._redact_email(identity), subject="sign-in code")
            return DeliveryResult(True)

        try:
            await asyncio.to_thread(self._send_email, identity, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(identity),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return DeliveryResult(False, "smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(identity),
                error=str(e),
            )
            return DeliveryResult(False, "recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(identity),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, type(e).__name__)
        except (ssl.SSLError, OSError) as e:
            # Covers connection refusals and socket timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(identity),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, type(e).__name__)

        logger.info("email_sent", to=self._redact_email(identity))
        return DeliveryResult(True)
