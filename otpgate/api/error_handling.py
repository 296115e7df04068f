from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from otpgate.api.schemas import Envelope, ErrorBody
from otpgate.logging import get_logger
from otpgate.service.errors import (
    ConfigurationError,
    RateLimitedError,
    ServiceError,
    SessionInvalidError,
    SuspendedError,
)
from otpgate.service.tokens import ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME
from otpgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "server_error",
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_body = ErrorBody(code=code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def clear_session_cookies(response, *, refresh_path: str) -> None:
    response.delete_cookie(ACCESS_COOKIE_NAME, path="/", httponly=True, samesite="strict")
    response.delete_cookie(
        REFRESH_COOKIE_NAME, path=refresh_path, httponly=True, samesite="strict"
    )


def register_exception_handlers(app: FastAPI, *, refresh_cookie_path: str = "/v1/auth") -> None:
    """Install exception handlers rendering every failure in the error envelope."""

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):
        # Never echo configuration detail to callers
        logger.critical(
            "configuration_error",
            path=request.url.path,
            method=request.method,
        )
        return _error_response(500, "service misconfigured", code=exc.error_code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, (RateLimitedError, SuspendedError)) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        response = _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )
        if isinstance(exc, SessionInvalidError):
            clear_session_cookies(response, refresh_path=refresh_cookie_path)
        return response

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            503, "service temporarily unavailable", code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _error_response(400, "invalid request", errors, code="invalid_input")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
