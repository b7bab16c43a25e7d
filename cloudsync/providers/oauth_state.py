"""Signed, single-use OAuth ``state`` tokens.

The token is a JWT signed with the application secret carrying the provider,
user id, a random nonce and the issue time. Nonces are remembered until they
are consumed or expire, so a state can only complete one flow.
"""

from __future__ import annotations

import secrets
import time
from typing import Any

import jwt

from cloudsync.exceptions import OAuthStateError

STATE_ALGORITHM = "HS256"
STATE_AUDIENCE = "cloudsync-oauth"


class OAuthStateStore:
    """Issue and validate OAuth state tokens with automatic expiry."""

    def __init__(self, secret_key: str, ttl_seconds: int = 600, max_entries: int = 100) -> None:
        self._secret_key = secret_key
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._nonces: dict[str, float] = {}

    def issue(self, provider: str, user_id: str) -> str:
        """Create a state token for a new authorization request."""
        self.cleanup()
        if len(self._nonces) >= self._max_entries:
            oldest = min(self._nonces, key=lambda k: self._nonces[k])
            del self._nonces[oldest]
        nonce = secrets.token_urlsafe(16)
        issued_at = time.time()
        self._nonces[nonce] = issued_at
        payload = {
            "provider": provider,
            "user_id": user_id,
            "nonce": nonce,
            "iat": int(issued_at),
            "exp": int(issued_at) + self._ttl,
            "aud": STATE_AUDIENCE,
        }
        return jwt.encode(payload, self._secret_key, algorithm=STATE_ALGORITHM)

    def consume(self, state: str) -> dict[str, Any]:
        """Validate a state token and mark it used.

        Raises OAuthStateError when the token is malformed, expired, signed
        with another key or already consumed.
        """
        try:
            payload = jwt.decode(
                state,
                self._secret_key,
                algorithms=[STATE_ALGORITHM],
                audience=STATE_AUDIENCE,
                options={"require": ["exp", "iat", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise OAuthStateError("OAuth state expired") from exc
        except jwt.InvalidTokenError as exc:
            raise OAuthStateError("Invalid OAuth state") from exc

        nonce = payload.get("nonce")
        if not isinstance(nonce, str) or self._nonces.pop(nonce, None) is None:
            raise OAuthStateError("OAuth state already used or unknown")
        if not payload.get("provider") or not payload.get("user_id"):
            raise OAuthStateError("Invalid OAuth state")
        return payload

    def cleanup(self) -> None:
        """Forget nonces older than the TTL."""
        now = time.time()
        expired = [k for k, t in self._nonces.items() if now - t > self._ttl]
        for k in expired:
            del self._nonces[k]
