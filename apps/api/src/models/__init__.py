"""
SQLAlchemy models.
"""
from src.models.refresh_token import RefreshToken


__all__ = [
    "RefreshToken",
]
