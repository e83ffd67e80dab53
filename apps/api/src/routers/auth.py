"""
Authentication router with exchange, refresh and logout endpoints.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.core.clock import as_utc, utcnow
from src.core.config import Settings
from src.core.deps import get_app_settings, get_session_service, rate_limited
from src.core.errors import AuthError
from src.schemas.auth import AccessTokenResponse, ExchangeRequest, MessageResponse
from src.services.session import SessionService, SessionTokens

router = APIRouter(prefix="/auth", tags=["auth"])

UNAUTHORIZED_DETAIL = "Invalid or expired credentials"


def _unauthorized(detail: str = UNAUTHORIZED_DETAIL) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _set_refresh_cookie(response: Response, settings: Settings, secret: str, expires_at: datetime) -> None:
    max_age = int((as_utc(expires_at) - utcnow()).total_seconds())
    response.set_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        value=secret,
        max_age=max_age,
        path=settings.REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )


def _read_refresh_cookie(request: Request, settings: Settings) -> str:
    secret: Optional[str] = request.cookies.get(settings.REFRESH_COOKIE_NAME)
    if not secret:
        raise _unauthorized("Missing refresh token")
    return secret


def _token_response(response: Response, settings: Settings, tokens: SessionTokens) -> AccessTokenResponse:
    _set_refresh_cookie(response, settings, tokens.refresh_token, tokens.refresh_expires_at)
    response.headers["Cache-Control"] = "no-store"
    return AccessTokenResponse(access_token=tokens.access_token)


@router.post("/exchange", response_model=AccessTokenResponse, dependencies=[Depends(rate_limited)])
def exchange(
    body: ExchangeRequest,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_app_settings),
) -> AccessTokenResponse:
    """
    Exchange an identity provider ID token for a session.

    Returns the access token in the body and sets the refresh token as an
    HttpOnly cookie scoped to the auth routes.
    """
    try:
        tokens = sessions.exchange(body.id_token)
    except AuthError:
        raise _unauthorized("Invalid identity token")

    return _token_response(response, settings, tokens)


@router.post("/refresh", response_model=AccessTokenResponse, dependencies=[Depends(rate_limited)])
def refresh(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_app_settings),
) -> AccessTokenResponse:
    """
    Exchange the refresh cookie for a new access token.

    Implements token rotation: the presented refresh token is revoked and a
    new one is set in its place. Every refusal looks the same to the client.
    """
    secret = _read_refresh_cookie(request, settings)
    try:
        tokens = sessions.refresh(secret)
    except AuthError:
        raise _unauthorized()

    return _token_response(response, settings, tokens)


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_app_settings),
) -> MessageResponse:
    """
    Revoke the refresh cookie and clear it.

    Succeeds whether or not the token was still valid.
    """
    secret = _read_refresh_cookie(request, settings)
    sessions.logout(secret)

    response.delete_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        path=settings.REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )
    return MessageResponse(message="Successfully logged out")
