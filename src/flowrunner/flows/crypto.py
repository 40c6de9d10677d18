"""Symmetric encryption of flow payloads at rest."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from flowrunner.errors import DecryptionError


def _derive_key(raw: str) -> bytes:
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_flow(plaintext: str, key: str) -> str:
    fernet = Fernet(_derive_key(key))
    return fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_flow(ciphertext: str, key: str) -> str:
    fernet = Fernet(_derive_key(key))
    try:
        return fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise DecryptionError("Unable to decrypt flow payload") from exc


__all__ = ["encrypt_flow", "decrypt_flow"]
