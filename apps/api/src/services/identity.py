"""
Identity provider adapter.

Verifies ID tokens issued by an external provider (Firebase / Google secure
token by default) against the provider's published JWKS signing keys.
"""
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

import requests
from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from src.core.errors import IdentityProviderUnavailable, InvalidAssertion

logger = logging.getLogger(__name__)

# Firebase uids are at most 128 characters
MAX_SUBJECT_LENGTH = 128


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a successful assertion check."""
    subject: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class IdentityProvider(Protocol):
    def verify_assertion(self, id_token: str) -> VerifiedIdentity:
        """Return the verified identity or raise InvalidAssertion / IdentityProviderUnavailable."""
        ...


class JWKSIdentityProvider:
    """
    Verify provider-signed ID tokens with keys fetched from a JWKS endpoint.

    Keys are cached for `cache_seconds`. A token signed with an unknown `kid`
    triggers one refetch (the provider rotates keys), at most once every
    `min_refresh_seconds` so bogus tokens cannot hammer the endpoint.
    """

    def __init__(
        self,
        jwks_url: str,
        audience: str,
        issuer: Optional[str] = None,
        algorithms: Sequence[str] = ("RS256",),
        timeout: float = 5.0,
        cache_seconds: float = 3600,
        min_refresh_seconds: float = 30,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.algorithms = list(algorithms)
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self._http = http or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None
        self._attempted_at: Optional[float] = None

        # A shared JWKS signs tokens for every project, so the audience is what binds us to ours
        if not audience:
            raise ValueError("IDENTITY_PROVIDER_AUDIENCE must be set to the identity provider project id")

    def verify_assertion(self, id_token: str) -> VerifiedIdentity:
        if not id_token:
            raise InvalidAssertion("Empty ID token")

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise InvalidAssertion("ID token is not a valid JWT") from exc

        if header.get("alg") not in self.algorithms:
            raise InvalidAssertion(f"ID token signed with unexpected algorithm {header.get('alg')!r}")

        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            raise InvalidAssertion("ID token has a malformed key id")

        key = self._signing_key(kid)
        if key is None:
            raise InvalidAssertion(f"ID token signed with unknown key {kid!r}")

        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_at_hash": False},
            )
        except ExpiredSignatureError as exc:
            raise InvalidAssertion("ID token has expired") from exc
        except JWTClaimsError as exc:
            raise InvalidAssertion(f"ID token claims rejected: {exc}") from exc
        except JWTError as exc:
            raise InvalidAssertion(f"ID token signature rejected: {exc}") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject or len(subject) > MAX_SUBJECT_LENGTH:
            raise InvalidAssertion("ID token has no usable subject")

        email = claims.get("email")
        return VerifiedIdentity(
            subject=subject,
            email=email if isinstance(email, str) else None,
            claims=claims,
        )

    def _signing_key(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        with self._lock:
            now = self._clock()
            if self._fetched_at is None or now - self._fetched_at >= self.cache_seconds:
                self._refresh_keys(now)

            key = self._lookup(kid)
            if key is None and now - self._attempted_at >= self.min_refresh_seconds:
                # Cached keys are still fresh, so a failed refetch only rejects this token
                try:
                    self._refresh_keys(now)
                except IdentityProviderUnavailable:
                    logger.warning(f"Keeping cached signing keys; refetch for unknown key {kid!r} failed")
                    return None
                key = self._lookup(kid)
            return key

    def _lookup(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        if kid is None:
            # Only unambiguous when the provider publishes a single key
            if len(self._keys) == 1:
                return next(iter(self._keys.values()))
            return None
        return self._keys.get(kid)

    def _refresh_keys(self, now: float) -> None:
        """Fetch the JWKS document. Caller holds `_lock`."""
        self._attempted_at = now
        try:
            response = self._http.get(self.jwks_url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except requests.Timeout as exc:
            logger.error(f"Timed out fetching signing keys from {self.jwks_url}")
            raise IdentityProviderUnavailable("Identity provider timed out") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.error(f"Failed to fetch signing keys from {self.jwks_url}: {exc}")
            raise IdentityProviderUnavailable("Identity provider unavailable") from exc

        keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(keys, list):
            logger.error(f"Signing key document from {self.jwks_url} has no 'keys' list")
            raise IdentityProviderUnavailable("Identity provider returned invalid keys")

        self._keys = {
            key.get("kid", f"key-{index}"): key
            for index, key in enumerate(keys)
            if isinstance(key, dict) and isinstance(key.get("kid", ""), str)
        }
        self._fetched_at = now
        logger.info(f"Loaded {len(self._keys)} signing keys from {self.jwks_url}")
