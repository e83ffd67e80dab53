"""
Security utilities for access token signing and refresh secret hashing.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import secrets

from jose import jwt, JWTError
from jose.exceptions import JWTClaimsError

from src.core.clock import Clock, utcnow
from src.core.errors import InvalidSignature, MalformedToken, TokenExpired

ACCESS_TOKEN_TYPE = "access"


def hash_token(token: str) -> str:
    """
    Hash a refresh secret for storage.

    We hash tokens before storing them so that if the database is compromised,
    the attacker can't use the stored tokens.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def generate_refresh_secret() -> str:
    """Opaque high-entropy bearer secret for refresh tokens."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class AccessClaims:
    """Claims carried by an access token."""
    subject: str
    email: Optional[str]
    issued_at: datetime
    expires_at: datetime


class TokenCodec:
    """
    Mints and verifies HS256 access tokens.

    Verification is a pure function of the secret, the token and the clock:
    it never looks at persisted state, so an access token stays valid until
    it expires.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        leeway: timedelta = timedelta(seconds=5),
        clock: Clock = utcnow,
    ):
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.leeway = leeway
        self._clock = clock

    def mint(self, subject: str, email: Optional[str] = None, ttl: Optional[timedelta] = None) -> str:
        """Create a signed access token for `subject`."""
        if not subject:
            raise ValueError("subject must not be empty")

        issued_at = int(self._clock().timestamp())
        expires_at = issued_at + int((ttl or self.access_ttl).total_seconds())

        to_encode = {
            "sub": subject,
            "iat": issued_at,
            "exp": expires_at,
            "type": ACCESS_TOKEN_TYPE,
        }
        if email:
            to_encode["email"] = email
        return jwt.encode(to_encode, self._secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> AccessClaims:
        """
        Verify an access token and return its claims.

        Raises:
            MalformedToken: token is not a JWT or lacks required claims
            InvalidSignature: wrong signature or unexpected `alg` header
            TokenExpired: `exp` (plus leeway) has passed
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedToken("Token is not a valid JWT") from exc

        # Pin the algorithm before looking at the signature: a token must never
        # choose its own verification method (e.g. "none").
        if header.get("alg") != self.algorithm:
            raise InvalidSignature(f"Unexpected token algorithm {header.get('alg')!r}")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTClaimsError as exc:
            raise MalformedToken(str(exc)) from exc
        except JWTError as exc:
            raise InvalidSignature(str(exc)) from exc

        subject = payload.get("sub")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        email = payload.get("email")
        if (
            not isinstance(subject, str) or not subject
            or not isinstance(issued_at, int)
            or not isinstance(expires_at, int)
            or payload.get("type") != ACCESS_TOKEN_TYPE
            or (email is not None and not isinstance(email, str))
        ):
            raise MalformedToken("Token is missing required claims")

        now = self._clock().timestamp()
        if now >= expires_at + self.leeway.total_seconds():
            raise TokenExpired("Token has expired")

        return AccessClaims(
            subject=subject,
            email=email,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )
