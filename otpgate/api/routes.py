from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from otpgate.api.error_handling import clear_session_cookies
from otpgate.api.schemas import (
    AuthResponse,
    ChallengeResponse,
    Envelope,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    OTPRequest,
    OTPVerifyRequest,
    TokenRefreshRequest,
)
from otpgate.service.runtime import get_runtime
from otpgate.service.session import AuthTokens
from otpgate.service.tokens import (
    ACCESS_COOKIE_NAME,
    REFRESH_COOKIE_NAME,
    CookieOptions,
    TokenIssuer,
)

# Mounted under Settings.auth_path_prefix, which also scopes the refresh cookie
router = APIRouter()


def _client_origin(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_cookie(response: Response, name: str, value: str, options: CookieOptions) -> None:
    response.set_cookie(
        name,
        value,
        max_age=options.max_age,
        path=options.path,
        httponly=options.httponly,
        secure=options.secure,
        samesite=options.samesite,
    )


def _apply_session_cookies(response: Response, tokens: AuthTokens, issuer: TokenIssuer) -> None:
    _set_cookie(response, ACCESS_COOKIE_NAME, tokens.access_token, issuer.access_cookie_options())
    if tokens.refresh_token:
        _set_cookie(
            response, REFRESH_COOKIE_NAME, tokens.refresh_token, issuer.refresh_cookie_options()
        )


def _auth_response(tokens: AuthTokens) -> AuthResponse:
    return AuthResponse(
        email=tokens.identity,
        access_token=tokens.access_token,
        access_expires_at=tokens.access_expires_at,
        refresh_token=tokens.refresh_token,
        refresh_expires_at=tokens.refresh_expires_at,
    )


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> dict[str, Any]:
    """Claims of the caller's access token; cookie first, then Bearer header."""
    runtime = get_runtime()
    return runtime.sessions.authenticate(
        request.cookies.get(ACCESS_COOKIE_NAME), authorization
    )


@router.post("/otp/request", response_model=Envelope, tags=["auth"])
async def request_otp(body: OTPRequest, request: Request):
    """Send a one-time sign-in code to an email address.

    Raises:
        400: malformed email
        403: identity suspended after repeated failures
        429: rate limit exceeded for this email or client
        502: the code could not be delivered
    """
    runtime = get_runtime()
    receipt = await runtime.sessions.request_challenge(body.email, _client_origin(request))
    return Envelope(
        status="ok",
        data=ChallengeResponse(
            email=receipt.identity,
            expires_at=receipt.expires_at,
            delivered=receipt.delivered,
            dev_code=receipt.dev_code,
        ),
    )


@router.post("/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OTPVerifyRequest, response: Response):
    """Redeem a code for an access token and a refresh token, also set as cookies."""
    runtime = get_runtime()
    tokens = await runtime.sessions.redeem(body.email, body.code)
    _apply_session_cookies(response, tokens, runtime.tokens)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    refresh_token = request.cookies.get(REFRESH_COOKIE_NAME) or (
        body.refresh_token if body else None
    )
    tokens = await runtime.sessions.refresh(refresh_token)
    _apply_session_cookies(response, tokens, runtime.tokens)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
):
    """Revoke the presented refresh token only; other devices stay signed in."""
    runtime = get_runtime()
    refresh_token = request.cookies.get(REFRESH_COOKIE_NAME) or (
        body.refresh_token if body else None
    )
    revoked = await runtime.sessions.logout(refresh_token)
    clear_session_cookies(response, refresh_path=runtime.settings.auth_path_prefix)
    return Envelope(status="ok", data=LogoutResponse(revoked=int(revoked)))


@router.post("/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: dict = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.sessions.logout_all(principal["sub"])
    clear_session_cookies(response, refresh_path=runtime.settings.auth_path_prefix)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: dict = Depends(get_principal)):
    extra = {
        key: value
        for key, value in principal.items()
        if key not in {"sub", "exp", "iss", "aud", "jti", "iat", "token_type"}
    }
    return Envelope(
        status="ok",
        data=MeResponse(
            email=principal["sub"],
            expires_at=datetime.fromtimestamp(principal["exp"], tz=timezone.utc),
            claims=extra,
        ),
    )
