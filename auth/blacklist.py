"""
auth/blacklist.py -- Revocation list for access-token IDs.

Access JWTs are stateless, so logout alone cannot invalidate one. On logout
the token's jti is written here with a TTL equal to the token's remaining
lifetime; once the token would have expired anyway the entry expires too.

MFA challenge tokens reuse the same mechanism: consume() records the jti on
first successful use and reports whether this caller was first.

Failure policy:
  is_revoked() fails CLOSED -- if the store cannot be read, the token is
  treated as revoked. A storage outage must not resurrect logged-out tokens.
  revoke() failures are logged and reported as False; logout still clears
  cookies and revokes the refresh token.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import sqlite3

from cache.store import ExpiringStore

logger = logging.getLogger("folio.auth.blacklist")

_BLACKLIST_PREFIX = "jwt:blacklist:"


class TokenBlacklist:
    def __init__(self, store: ExpiringStore) -> None:
        self._store = store

    def revoke(self, jti: str | None, remaining_seconds: int) -> bool:
        if not jti or remaining_seconds <= 0:
            return False
        try:
            self._store.set(_BLACKLIST_PREFIX + jti, "1", ttl=remaining_seconds)
        except sqlite3.Error as exc:
            logger.error("Failed to blacklist jti=%s: %s", jti, exc)
            return False
        logger.debug("Blacklisted jti=%s ttl=%ds", jti, remaining_seconds)
        return True

    def consume(self, jti: str | None, remaining_seconds: int) -> bool:
        """Mark a single-use token as spent. True only for the first caller."""
        if not jti or remaining_seconds <= 0:
            return False
        return self._store.add(_BLACKLIST_PREFIX + jti, "1", ttl=remaining_seconds)

    def is_revoked(self, jti: str | None) -> bool:
        if not jti:
            return False
        try:
            return self._store.exists(_BLACKLIST_PREFIX + jti)
        except sqlite3.Error as exc:
            logger.error("Failed to check blacklist for jti=%s: %s", jti, exc)
            return True
