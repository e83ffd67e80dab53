from contextlib import asynccontextmanager
from datetime import timedelta
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core.config import Settings, get_settings
from src.core.errors import ClientKeyUnavailable, DependencyUnavailable
from src.core.rate_limit import RateGuard
from src.core.security import TokenCodec
from src.db.session import build_engine, build_session_factory
from src.routers.auth import router as auth_router
from src.routers.health import router as health_router
from src.routers.profile import router as profile_router
from src.services.identity import IdentityProvider, JWKSIdentityProvider

logger = logging.getLogger(__name__)


def build_identity_provider(settings: Settings) -> JWKSIdentityProvider:
    return JWKSIdentityProvider(
        jwks_url=settings.IDENTITY_PROVIDER_JWKS_URL,
        audience=settings.IDENTITY_PROVIDER_AUDIENCE,
        issuer=settings.identity_issuer,
        algorithms=settings.IDENTITY_PROVIDER_ALGORITHMS,
        timeout=settings.IDENTITY_PROVIDER_TIMEOUT_SECONDS,
        cache_seconds=settings.JWKS_CACHE_SECONDS,
    )


def _server_error(request: Request, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": message,
            "request_id": request.headers.get("X-Request-ID"),
        }
    )


def create_app(
    settings: Optional[Settings] = None,
    identity_provider: Optional[IdentityProvider] = None,
    rate_guard: Optional[RateGuard] = None,
) -> FastAPI:
    """
    Build the application with its process-scoped components.

    The database engine, rate guard, token codec and identity provider live
    on `app.state` and are built from `settings`; a fresh app gets fresh
    instances.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.rate_guard.start()
        logger.info(f"{settings.APP_NAME} started")
        yield
        app.state.rate_guard.stop()
        app.state.engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Exchanges verified identity tokens for short-lived access tokens and rotating refresh tokens.",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = build_engine(settings)
    app.state.session_factory = build_session_factory(app.state.engine)
    app.state.rate_guard = rate_guard or RateGuard(
        limit=settings.RATE_LIMIT_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        sweep_interval_seconds=settings.RATE_LIMIT_SWEEP_SECONDS,
    )
    app.state.token_codec = TokenCodec(
        secret_key=settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
        access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        leeway=timedelta(seconds=settings.JWT_LEEWAY_SECONDS),
    )
    app.state.identity_provider = identity_provider or build_identity_provider(settings)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies are client errors."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(DependencyUnavailable)
    async def dependency_exception_handler(request: Request, exc: DependencyUnavailable):
        """Store or identity provider failures: logged in detail, opaque to the client."""
        logger.error(f"Dependency failure ({exc.code}) on {request.url.path}: {exc}", exc_info=exc)
        return _server_error(request, "A required service is unavailable. Please try again later.")

    @app.exception_handler(ClientKeyUnavailable)
    async def client_key_exception_handler(request: Request, exc: ClientKeyUnavailable):
        """The rate guard fails closed when it cannot identify the client."""
        logger.error(f"Rejecting request to {request.url.path}: {exc}")
        return _server_error(request, "Unable to process request.")

    # Global exception handler for unhandled errors
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected server errors with structured response."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _server_error(request, "An unexpected error occurred. Please try again later.")

    # Refresh cookies need credentialed CORS, so origins are listed explicitly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type"],
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(profile_router)

    @app.get("/")
    def read_root():
        return {
            "message": f"Welcome to {settings.APP_NAME}",
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()
