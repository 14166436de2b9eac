"""
AES-256-GCM envelope encryption for stored credentials.
"""

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from usage_ingest.errors import SessionAuthenticationError, SessionFormatError, ValidationError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext, nonce and GCM tag, each base64-encoded."""
    ciphertext: str
    iv: str
    tag: str


def _check_key(key: bytes) -> None:
    if not isinstance(key, bytes) or len(key) != KEY_BYTES:
        raise ValidationError(f"Encryption key must be {KEY_BYTES} bytes")


def encrypt_payload(plaintext: bytes, key: bytes) -> EncryptedEnvelope:
    """Encrypt with a fresh random 12-byte nonce.

    Raises:
        ValidationError: If the key is not 32 bytes
    """
    _check_key(key)
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return EncryptedEnvelope(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(nonce).decode("ascii"),
        tag=base64.b64encode(tag).decode("ascii"),
    )


def decrypt_payload(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    """Decrypt and authenticate an envelope.

    Raises:
        ValidationError: If the key is not 32 bytes
        SessionFormatError: If a field is not valid base64 or has a bad length
        SessionAuthenticationError: On a wrong key or tampered data
    """
    _check_key(key)
    try:
        ciphertext = base64.b64decode(envelope.ciphertext, validate=True)
        nonce = base64.b64decode(envelope.iv, validate=True)
        tag = base64.b64decode(envelope.tag, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise SessionFormatError(f"Credential envelope is not valid base64: {e}") from e
    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        raise SessionFormatError("Credential envelope has invalid nonce or tag length")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise SessionAuthenticationError("Credential authentication failed") from e
