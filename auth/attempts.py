"""
auth/attempts.py -- Failed-login tracking with progressive lockout.

Per-account complement to the per-IP slowapi limit on /login: an attacker
rotating IPs still hits this counter because it is keyed by email.

Counters live in the expiring store:
  login_attempt:<email>  -- failures in the current window (fixed from the
                            first failure, LOGIN_ATTEMPT_WINDOW_MINUTES)
  lockout:<email>        -- present while the account is locked

When failures reach LOGIN_MAX_ATTEMPTS the account is locked for
base * min(failures - max + 1, 6) minutes, so each further failure while the
window is open lengthens the next lockout, capped at six times the base.
"""

from __future__ import annotations

import logging
import math

from auth.tokens import mask_email
from cache.store import ExpiringStore

logger = logging.getLogger("folio.auth.attempts")

_ATTEMPT_PREFIX = "login_attempt:"
_LOCKOUT_PREFIX = "lockout:"
_MAX_LOCKOUT_MULTIPLIER = 6


class LoginAttemptTracker:
    def __init__(
        self,
        store: ExpiringStore,
        max_attempts: int = 5,
        window_minutes: int = 15,
        lockout_base_minutes: int = 5,
    ) -> None:
        self._store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_minutes * 60
        self.lockout_base_seconds = lockout_base_minutes * 60

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def is_locked(self, email: str) -> bool:
        return self._store.exists(_LOCKOUT_PREFIX + self._key(email))

    def remaining_lockout_minutes(self, email: str) -> int:
        seconds = self._store.ttl(_LOCKOUT_PREFIX + self._key(email))
        return max(1, math.ceil(seconds / 60))

    def record_failure(self, email: str, client_ip: str | None = None) -> int:
        """Count a failed attempt; lock the account once the threshold is hit."""
        key = self._key(email)
        attempts = self._store.incr(_ATTEMPT_PREFIX + key, ttl=self.window_seconds)
        if attempts >= self.max_attempts:
            multiplier = min(attempts - self.max_attempts + 1, _MAX_LOCKOUT_MULTIPLIER)
            lockout = self.lockout_base_seconds * multiplier
            self._store.set(_LOCKOUT_PREFIX + key, str(attempts), ttl=lockout)
            logger.warning(
                "Account locked after %d failed attempts: %s (ip=%s, %ds)",
                attempts,
                mask_email(key),
                client_ip or "unknown",
                lockout,
            )
        return attempts

    def remaining_attempts(self, email: str) -> int:
        current = self._store.get(_ATTEMPT_PREFIX + self._key(email))
        used = int(current) if current is not None else 0
        return max(0, self.max_attempts - used)

    def clear(self, email: str) -> None:
        key = self._key(email)
        self._store.delete(_ATTEMPT_PREFIX + key)
        self._store.delete(_LOCKOUT_PREFIX + key)
