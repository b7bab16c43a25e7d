"""Symmetric encryption for connection secrets stored at rest."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


def _derive_key(secret_key: str) -> bytes:
    """Derive a Fernet key from the application secret using SHA-256."""
    digest = hashlib.sha256(secret_key.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str, secret_key: str) -> str:
    """Encrypt a string and return the ciphertext as a URL-safe string."""
    f = Fernet(_derive_key(secret_key))
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret_key: str) -> str:
    """Decrypt a ciphertext string. Raises ValueError on failure."""
    f = Fernet(_derive_key(secret_key))
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt connection secrets") from exc


def encrypt_json(payload: dict[str, Any], secret_key: str) -> str:
    """Serialize a token or credential payload and encrypt it."""
    return encrypt_value(json.dumps(payload, sort_keys=True), secret_key)


def decrypt_json(ciphertext: str, secret_key: str) -> dict[str, Any]:
    """Decrypt and parse a payload written by :func:`encrypt_json`."""
    data = json.loads(decrypt_value(ciphertext, secret_key))
    if not isinstance(data, dict):
        raise ValueError("Connection secrets payload is not an object")
    return data
