"""
Session orchestration: exchange, refresh and logout.
"""
from dataclasses import dataclass
from datetime import datetime
import logging

from src.core.errors import InvalidAssertion, RefreshTokenError, RefreshTokenReused
from src.core.security import TokenCodec
from src.services.identity import IdentityProvider
from src.services.refresh_tokens import RefreshTokenStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionTokens:
    """Tokens handed to the client after exchange or refresh."""
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    subject: str


class SessionService:
    """
    Composes the identity provider, token codec and refresh token store.

    Failure kinds are logged here with their specific names and re-raised;
    the router turns every one of them into the same unauthorized response.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: RefreshTokenStore,
        identity_provider: IdentityProvider,
        revoke_family_on_reuse: bool = False,
    ):
        self.codec = codec
        self.store = store
        self.identity_provider = identity_provider
        self.revoke_family_on_reuse = revoke_family_on_reuse

    def exchange(self, id_token: str) -> SessionTokens:
        """Trade a verified identity assertion for a new session."""
        try:
            identity = self.identity_provider.verify_assertion(id_token)
        except InvalidAssertion as exc:
            logger.warning(f"Identity assertion rejected: {exc}")
            raise

        access_token = self.codec.mint(identity.subject, email=identity.email)
        refresh = self.store.issue(identity.subject)
        logger.info(f"Session started for subject {identity.subject}")

        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh.secret,
            refresh_expires_at=refresh.expires_at,
            subject=identity.subject,
        )

    def refresh(self, refresh_secret: str) -> SessionTokens:
        """Rotate a refresh token and mint a new access token for its subject."""
        try:
            successor = self.store.validate_and_rotate(refresh_secret)
        except RefreshTokenReused as exc:
            logger.warning(f"Refresh token reuse detected for subject {exc.subject}: {exc}")
            if self.revoke_family_on_reuse and exc.subject:
                self.store.revoke_all_for_subject(exc.subject)
            raise
        except RefreshTokenError as exc:
            logger.info(f"Refresh rejected ({exc.code}): {exc}")
            raise

        # Email is not persisted with the refresh token; refreshed access tokens carry the subject only
        access_token = self.codec.mint(successor.subject)
        return SessionTokens(
            access_token=access_token,
            refresh_token=successor.secret,
            refresh_expires_at=successor.expires_at,
            subject=successor.subject,
        )

    def logout(self, refresh_secret: str) -> None:
        """End the session tied to `refresh_secret`. Idempotent."""
        self.store.revoke(refresh_secret)
