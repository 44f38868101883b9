"""Encryption of the OAuth token columns of ``auth_info``."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from autobackup.exceptions import CredentialError


class TokenCipher:
    """Fernet cipher keyed by the SHA-256 digest of ``SECRET_KEY``.

    Built once per credential store; every column is sealed separately so a
    failed decryption can say which one is unreadable.
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise CredentialError("SECRET_KEY is required to store credentials")
        digest = hashlib.sha256(secret_key.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def seal(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode()

    def open(self, ciphertext: str, column: str) -> str:
        """Decrypt one stored column.

        Raises CredentialError when the row was written under another secret or
        has been altered.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError(
                "Stored credential cannot be decrypted with SECRET_KEY", column=column
            ) from exc
