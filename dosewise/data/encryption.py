"""age encryption for OAuth tokens stored at rest, using pyrage."""

from __future__ import annotations

import base64
import logging

import pyrage
import pyrage.x25519

logger = logging.getLogger(__name__)

_SEALED_PREFIX = "age:"


def encrypt_data(plaintext: bytes, recipient_public_key: str) -> bytes:
    """Encrypt bytes for an age recipient."""
    recipient = pyrage.x25519.Recipient.from_str(recipient_public_key)
    result: bytes = pyrage.encrypt(plaintext, [recipient])
    return result


def decrypt_data(ciphertext: bytes, identity_private_key: str) -> bytes:
    """Decrypt age ciphertext with the matching identity."""
    identity = pyrage.x25519.Identity.from_str(identity_private_key)
    result: bytes = pyrage.decrypt(ciphertext, [identity])
    return result


def seal_token(token: str, recipient_public_key: str) -> str:
    """Encrypt a token into a printable 'age:<base64>' string.

    Empty tokens and an empty recipient pass through unchanged.
    """
    if not token or not recipient_public_key:
        return token
    ciphertext = encrypt_data(token.encode("utf-8"), recipient_public_key)
    return _SEALED_PREFIX + base64.b64encode(ciphertext).decode("ascii")


def open_token(value: str, identity_private_key: str) -> str:
    """Reverse seal_token. Values without the 'age:' prefix are returned as-is."""
    if not value.startswith(_SEALED_PREFIX):
        return value
    if not identity_private_key:
        msg = "Sealed token found but no age identity is configured"
        raise ValueError(msg)
    ciphertext = base64.b64decode(value[len(_SEALED_PREFIX) :])
    return decrypt_data(ciphertext, identity_private_key).decode("utf-8")
