"""Symmetric encryption for OAuth token material at rest."""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes

from app.core.errors import CredentialError


def _fernet_key(secret: str) -> bytes:
    """Accept a Fernet key as-is, otherwise derive one from the secret."""
    raw = secret.encode("utf-8")
    try:
        Fernet(raw)
        return raw
    except ValueError:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(raw)
        return base64.urlsafe_b64encode(digest.finalize())


class TokenCipher:
    """Encrypts and decrypts token strings with Fernet."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("ENCRYPTION_KEY is not configured")
        self._fernet = Fernet(_fernet_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise CredentialError("Failed to decrypt tokens") from e
