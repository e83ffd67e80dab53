"""
Refresh token store: issue, rotate, revoke and expire refresh tokens.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.clock import Clock, as_utc, utcnow
from src.core.errors import (
    RefreshTokenExpired,
    RefreshTokenNotFound,
    RefreshTokenReused,
    RefreshTokenRevoked,
    StoreUnavailable,
)
from src.core.security import generate_refresh_secret, hash_token
from src.models.refresh_token import RefreshToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly created refresh token. `secret` is the only copy of the plaintext."""
    id: UUID
    subject: str
    secret: str
    expires_at: datetime


class RefreshTokenStore:
    """
    Persisted state machine for refresh tokens.

    Rotation is a single transaction: the successor row is inserted and the
    presented row is revoked with a conditional update that only matches while
    `revoked_at IS NULL`. Two concurrent refreshes with the same secret, from
    any number of processes, therefore produce exactly one successor.
    """

    def __init__(self, db: Session, ttl: timedelta = timedelta(days=7), clock: Clock = utcnow):
        """
        Args:
            db: SQLAlchemy database session
            ttl: Lifetime of each issued refresh token
            clock: Source of the current UTC time
        """
        self.db = db
        self.ttl = ttl
        self._clock = clock

    def issue(self, subject: str) -> IssuedRefreshToken:
        """Create a new active refresh token for `subject`."""
        if not subject:
            raise ValueError("subject must not be empty")

        try:
            issued = self._add(subject, self._clock())
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to store refresh token for subject {subject}: {exc}")
            raise StoreUnavailable("Refresh token store unavailable") from exc

        logger.info(f"Issued refresh token {issued.id} for subject {subject}")
        return issued

    def validate_and_rotate(self, secret: str) -> IssuedRefreshToken:
        """
        Exchange a valid refresh secret for its successor.

        Returns:
            The successor token (same subject, new secret, new expiry)

        Raises:
            RefreshTokenNotFound: no row for this secret
            RefreshTokenExpired: the token's lifetime is over
            RefreshTokenReused: the token was already rotated (possible theft)
            RefreshTokenRevoked: the token was logged out
            StoreUnavailable: the database failed
        """
        now = self._clock()
        try:
            row = self._find(hash_token(secret))
            if row is None:
                self.db.rollback()
                raise RefreshTokenNotFound("Refresh token not found")

            old_id, subject = row.id, row.subject
            expired = now >= as_utc(row.expires_at)
            revoked = row.revoked_at is not None
            rotated = row.replaced_by is not None

            if expired:
                self.db.rollback()
                raise RefreshTokenExpired(f"Refresh token {old_id} expired")

            if revoked:
                self.db.rollback()
                if rotated:
                    raise RefreshTokenReused(f"Refresh token {old_id} was already rotated", subject=subject)
                raise RefreshTokenRevoked(f"Refresh token {old_id} was revoked")

            successor = self._add(subject, now)

            claimed = self.db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == old_id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now, replaced_by=successor.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                # Another request rotated this token between our read and write
                self.db.rollback()
                raise RefreshTokenReused(f"Refresh token {old_id} was rotated concurrently", subject=subject)

            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Refresh token rotation failed: {exc}")
            raise StoreUnavailable("Refresh token store unavailable") from exc

        logger.info(f"Rotated refresh token {old_id} -> {successor.id} for subject {subject}")
        return successor

    def revoke(self, secret: str) -> None:
        """
        Revoke a refresh token (logout).

        Unknown, expired and already revoked secrets are silently accepted so
        callers learn nothing about whether the token existed.
        """
        now = self._clock()
        try:
            result = self.db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.token_hash == hash_token(secret),
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Refresh token revocation failed: {exc}")
            raise StoreUnavailable("Refresh token store unavailable") from exc

        if result.rowcount:
            logger.info("Refresh token revoked on logout")

    def revoke_all_for_subject(self, subject: str) -> int:
        """Revoke every active refresh token of `subject`. Returns the number revoked."""
        now = self._clock()
        try:
            result = self.db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.subject == subject,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to revoke refresh tokens for subject {subject}: {exc}")
            raise StoreUnavailable("Refresh token store unavailable") from exc

        logger.warning(f"Revoked {result.rowcount} refresh tokens for subject {subject}")
        return result.rowcount

    def purge_expired(self, older_than: Optional[datetime] = None) -> int:
        """
        Delete refresh tokens that expired before `older_than` (default: now).

        Revoked tokens are kept until they expire so a replay is still
        recognised as reuse rather than an unknown token.

        Returns:
            Number of rows removed
        """
        cutoff = older_than or self._clock()
        try:
            result = self.db.execute(
                delete(RefreshToken)
                .where(RefreshToken.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to purge expired refresh tokens: {exc}")
            raise StoreUnavailable("Refresh token store unavailable") from exc

        return result.rowcount

    def _find(self, token_hash: str) -> Optional[RefreshToken]:
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        return self.db.execute(stmt).scalar_one_or_none()

    def _add(self, subject: str, now: datetime) -> IssuedRefreshToken:
        secret = generate_refresh_secret()
        row = RefreshToken(
            id=uuid4(),
            subject=subject,
            token_hash=hash_token(secret),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(row)
        self.db.flush()
        return IssuedRefreshToken(id=row.id, subject=subject, secret=secret, expires_at=now + self.ttl)
