"""
Refresh token model backing session rotation.

A row is created on exchange and on every refresh. Rotating a token revokes
the old row and points `replaced_by` at its successor, so a chain of rows
records the history of one session.
"""
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Uuid

from src.db.base import Base


class RefreshToken(Base):
    """
    Persisted refresh token.

    States:
    - active: revoked_at is NULL and expires_at is in the future
    - rotated: revoked_at and replaced_by set
    - logged out: revoked_at set, replaced_by NULL
    - expired: expires_at passed (no row change)
    """
    __tablename__ = "refresh_tokens"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject = Column(String(128), nullable=False)

    # SHA-256 of the bearer secret; the plaintext is only ever sent to the client
    token_hash = Column(String(64), nullable=False)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by = Column(
        Uuid(as_uuid=True), ForeignKey("refresh_tokens.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("idx_refresh_tokens_token_hash", "token_hash", unique=True),
        Index("idx_refresh_tokens_subject", "subject"),
        Index("idx_refresh_tokens_expires", "expires_at"),
    )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def __repr__(self) -> str:
        return f"<RefreshToken id={self.id} subject={self.subject!r} revoked={self.is_revoked}>"
