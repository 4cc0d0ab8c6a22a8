"""
auth/crypto.py -- At-rest encryption for TOTP secrets.

A TOTP seed is a long-lived shared secret: whoever reads it can mint valid
codes forever. Seeds are therefore Fernet-encrypted (AES-128-CBC + HMAC)
before they reach the database.

Key source, in order:
  1. MFA_ENCRYPTION_KEY -- a urlsafe base64 Fernet key.
  2. Derived from SECRET_KEY with PBKDF2-HMAC-SHA256. Rotating SECRET_KEY
     then makes existing TOTP enrolments unreadable, so production
     deployments should set MFA_ENCRYPTION_KEY explicitly.
"""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

_KDF_SALT = b"folio.mfa.totp-secret"
_KDF_ITERATIONS = 100_000


class SecretDecryptionError(Exception):
    pass


class SecretCipher:
    def __init__(self, encryption_key: str = "", secret_key: str = "") -> None:
        if encryption_key:
            self._fernet = Fernet(encryption_key.encode())
        elif secret_key:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=_KDF_SALT,
                iterations=_KDF_ITERATIONS,
            )
            self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))
        else:
            raise ValueError("SecretCipher needs MFA_ENCRYPTION_KEY or SECRET_KEY")

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise SecretDecryptionError("Stored MFA secret could not be decrypted") from exc
