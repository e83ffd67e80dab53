"""
Delete expired refresh tokens.

Run periodically (e.g. a daily cron job) to keep the refresh_tokens table
small. Revoked tokens stay until they expire so replays are still detected.

Usage:
    cd apps/api
    uv run python scripts/purge_refresh_tokens.py
"""
import logging
import sys
from pathlib import Path

# Add apps/api to path for `src` imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from src.core.config import get_settings
from src.db.session import build_engine, build_session_factory
from src.services.refresh_tokens import RefreshTokenStore

logger = logging.getLogger("purge_refresh_tokens")


def purge() -> int:
    """Remove expired refresh tokens. Returns the number removed."""
    engine = build_engine(get_settings())
    db = build_session_factory(engine)()
    try:
        return RefreshTokenStore(db).purge_expired()
    finally:
        db.close()
        engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    removed = purge()
    logger.info(f"Removed {removed} expired refresh tokens")
