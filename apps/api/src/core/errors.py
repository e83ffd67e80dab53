"""
Exception hierarchy for session issuance.

Every failure kind stays distinguishable here so it can be logged, but the
HTTP layer collapses token, refresh and assertion failures into one
unauthorized response.
"""


class AuthError(Exception):
    """Base class for all session errors."""

    code = "auth_error"


# Access tokens

class TokenError(AuthError):
    """Access token failed verification."""

    code = "invalid_token"


class MalformedToken(TokenError):
    code = "malformed_token"


class InvalidSignature(TokenError):
    code = "invalid_signature"


class TokenExpired(TokenError):
    code = "token_expired"


# Refresh tokens

class RefreshTokenError(AuthError):
    """Refresh token cannot be used."""

    code = "invalid_refresh_token"


class RefreshTokenNotFound(RefreshTokenError):
    code = "refresh_token_not_found"


class RefreshTokenExpired(RefreshTokenError):
    code = "refresh_token_expired"


class RefreshTokenRevoked(RefreshTokenError):
    code = "refresh_token_revoked"


class RefreshTokenReused(RefreshTokenRevoked):
    """
    A rotated refresh token was presented again.

    The legitimate holder already received its successor, so a replay means
    the credential has been copied.
    """

    code = "refresh_token_reused"

    def __init__(self, message: str = "", subject: str | None = None):
        super().__init__(message)
        self.subject = subject


# Identity provider

class InvalidAssertion(AuthError):
    """The identity provider rejected the presented ID token."""

    code = "invalid_assertion"


# Dependencies

class DependencyUnavailable(Exception):
    """A collaborator (database, identity provider) failed or timed out."""

    code = "dependency_unavailable"


class StoreUnavailable(DependencyUnavailable):
    code = "store_unavailable"


class IdentityProviderUnavailable(DependencyUnavailable):
    code = "identity_provider_unavailable"


class ClientKeyUnavailable(Exception):
    """The rate guard could not derive a client key from the request."""

    code = "client_key_unavailable"
