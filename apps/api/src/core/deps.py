"""
FastAPI dependencies: per-app components, rate limiting and the bearer gate.
"""
from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.core.config import Settings
from src.core.errors import ClientKeyUnavailable, TokenError
from src.core.rate_limit import RateGuard
from src.core.security import TokenCodec
from src.db.session import get_db
from src.services.identity import IdentityProvider
from src.services.refresh_tokens import RefreshTokenStore
from src.services.session import SessionService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedSubject:
    """The principal behind a verified access token."""
    subject: str
    email: Optional[str] = None


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rate_guard(request: Request) -> RateGuard:
    return request.app.state.rate_guard


def get_token_codec(request: Request) -> TokenCodec:
    return request.app.state.token_codec


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def get_refresh_token_store(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> RefreshTokenStore:
    return RefreshTokenStore(db, ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))


def get_session_service(
    codec: TokenCodec = Depends(get_token_codec),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
    settings: Settings = Depends(get_app_settings),
) -> SessionService:
    return SessionService(
        codec=codec,
        store=store,
        identity_provider=identity_provider,
        revoke_family_on_reuse=settings.REVOKE_FAMILY_ON_REUSE,
    )


def client_key(request: Request) -> str:
    """Rate limiting key: the peer address of the connection."""
    host = request.client.host if request.client else None
    if not host:
        raise ClientKeyUnavailable("Unable to determine client address")
    return host


def rate_limited(request: Request, guard: RateGuard = Depends(get_rate_guard)) -> None:
    """Reject the request with 429 once the client exceeds its window."""
    key = client_key(request)
    if not guard.admit(key):
        logger.warning(f"Rate limit exceeded for IP: {key} on path: {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Try again later.",
            headers={"Retry-After": str(guard.retry_after(key))},
        )


def get_current_subject(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    codec: TokenCodec = Depends(get_token_codec),
) -> AuthenticatedSubject:
    """
    Verify the bearer access token.

    Any failure ends the request with 401 before the route handler runs.
    The verified subject is returned and also kept on `request.state.auth`.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = codec.verify(credentials.credentials)
    except TokenError as exc:
        logger.info(f"Access token rejected ({exc.code}) on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    auth = AuthenticatedSubject(subject=claims.subject, email=claims.email)
    request.state.auth = auth
    return auth
