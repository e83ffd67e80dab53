"""
Database session management.
"""
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator

from src.core.config import Settings


def engine_options(settings: Settings) -> dict:
    """
    Engine arguments bounding how long a database call may block.

    PostgreSQL gets a connect timeout and a server-side statement timeout;
    every pooled backend gets a pool checkout timeout.
    """
    url = make_url(settings.DATABASE_URL)
    options: dict = {"pool_pre_ping": True}

    if url.get_backend_name() == "postgresql":
        options["pool_timeout"] = settings.DB_TIMEOUT_SECONDS
        options["connect_args"] = {
            "connect_timeout": settings.DB_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={settings.DB_TIMEOUT_SECONDS * 1000}",
        }
    elif url.get_backend_name() == "sqlite":
        options["connect_args"] = {
            "timeout": settings.DB_TIMEOUT_SECONDS,
            "check_same_thread": False,
        }
    return options


def build_engine(settings: Settings) -> Engine:
    return create_engine(settings.DATABASE_URL, **engine_options(settings))


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency that provides a session bound to the app's own engine."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
