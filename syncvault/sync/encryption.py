"""
AES-256-GCM primitives.

Two wire formats share one cipher:

At-rest fields (server-held secrets, key = SHA-256(secret)):
    base64(iv) ":" base64(ciphertext) ":" base64(tag)

Client blobs (vault key from the password):
    base64(iv(12) || ciphertext || tag(16))
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets as _secrets
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from syncvault.config.settings import MIN_PBKDF2_ITERATIONS
from syncvault.errors import DecryptionFailure

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
SYNC_PAYLOAD_VERSION = 1


# ── At-rest fields ──────────────────────────────────────────────

def _key_from_secret(secret: str) -> bytes:
    return hashlib.sha256(str(secret).encode("utf-8")).digest()


def encrypt(plaintext: Optional[str], secret: str) -> Optional[str]:
    """Seal ``plaintext`` under SHA-256(secret) with a fresh random IV."""
    if not secret:
        raise ValueError("Encryption secret is required")
    if plaintext is None:
        return None

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_key_from_secret(secret)).encrypt(iv, str(plaintext).encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, ciphertext, tag)
    )


def _split_sealed(value: str) -> Optional[tuple[bytes, bytes, bytes]]:
    parts = value.split(":")
    if len(parts) != 3 or not all(parts[0::2]):
        return None
    try:
        iv, ciphertext, tag = (base64.b64decode(p, validate=True) for p in parts)
    except (binascii.Error, ValueError):
        return None
    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        return None
    return iv, ciphertext, tag


def decrypt(encoded: Any, secrets: Union[str, Iterable[str]]) -> Any:
    """Open a sealed field, trying each candidate secret in order.

    Values that are not sealed (non-strings, no ``:``, URLs, or anything that
    does not split into iv:ciphertext:tag) are legacy plaintext and come back
    unchanged. Returns None when every candidate fails.
    """
    if not secrets:
        raise ValueError("Encryption secret is required")

    if not isinstance(encoded, str) or ":" not in encoded:
        return encoded

    sealed = _split_sealed(encoded)
    if sealed is None:
        # URLs ("https://host:8080/x"), "user:pass" and other legacy plaintext
        return encoded

    iv, ciphertext, tag = sealed
    candidates = [secrets] if isinstance(secrets, str) else list(secrets)

    for secret in candidates:
        try:
            plaintext = AESGCM(_key_from_secret(secret)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            continue
        return plaintext.decode("utf-8")

    logger.warning(
        "Decryption failed for all %d candidate keys. Data may be corrupted or key lost.",
        len(candidates),
    )
    return None


def generate_random_key() -> str:
    """256 random bits, hex encoded."""
    return _secrets.token_hex(32)


# ── Client blobs ────────────────────────────────────────────────

@dataclass
class EncryptedPayload:
    """Holds nonce + ciphertext (with appended GCM tag)."""

    nonce: bytes
    ciphertext: bytes  # ciphertext || tag

    def to_combined(self) -> bytes:
        return self.nonce + self.ciphertext

    @classmethod
    def from_combined(cls, data: bytes) -> "EncryptedPayload":
        if len(data) < IV_LENGTH + TAG_LENGTH:
            raise ValueError("Combined payload too short")
        return cls(nonce=data[:IV_LENGTH], ciphertext=data[IV_LENGTH:])

    def to_base64(self) -> str:
        return base64.b64encode(self.to_combined()).decode("ascii")

    @classmethod
    def from_base64(cls, b64: str) -> "EncryptedPayload":
        return cls.from_combined(base64.b64decode(b64))


def encrypt_with_key(plaintext: str, key: bytes) -> str:
    nonce = os.urandom(IV_LENGTH)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)  # ct includes 16-byte tag
    return EncryptedPayload(nonce=nonce, ciphertext=ct).to_base64()


def decrypt_with_key(b64: str, key: bytes) -> str:
    try:
        payload = EncryptedPayload.from_base64(b64)
        return AESGCM(key).decrypt(payload.nonce, payload.ciphertext, None).decode("utf-8")
    except (InvalidTag, ValueError, binascii.Error) as e:
        raise DecryptionFailure("Failed to decrypt data. Wrong password or corrupted data.") from e


# ── Sync payload helpers ────────────────────────────────────────

def encrypt_sync_payload(
    state: dict, key: bytes, salt: bytes, iterations: Optional[int] = None
) -> dict:
    """Envelope pushed to the Sync Service. Salt and iteration count are public."""
    plaintext = json.dumps(state, separators=(",", ":"))
    envelope = {
        "v": SYNC_PAYLOAD_VERSION,
        "isEncrypted": True,
        "salt": base64.b64encode(salt).decode("ascii"),
        "data": encrypt_with_key(plaintext, key),
    }
    if iterations is not None:
        envelope["iterations"] = iterations
    return envelope


def is_encrypted_payload(envelope: Any) -> bool:
    return isinstance(envelope, dict) and bool(envelope.get("isEncrypted")) and "data" in envelope


def payload_salt(envelope: dict) -> Optional[bytes]:
    salt = envelope.get("salt")
    if not salt:
        return None
    try:
        return base64.b64decode(salt, validate=True)
    except (binascii.Error, ValueError):
        logger.error("Failed to decode sync salt")
        return None


def payload_iterations(envelope: dict) -> Optional[int]:
    """PBKDF2 iteration count the envelope was sealed with, if it names a usable one."""
    value = envelope.get("iterations")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < MIN_PBKDF2_ITERATIONS:
        logger.error("Ignoring sync iteration count %r", value)
        return None
    return value


def decrypt_sync_payload(envelope: dict, key: bytes) -> dict:
    version = envelope.get("v", SYNC_PAYLOAD_VERSION)
    if version != SYNC_PAYLOAD_VERSION:
        raise ValueError(f"Unsupported sync payload version: {version}")
    data = json.loads(decrypt_with_key(envelope["data"], key))
    if not isinstance(data, dict):
        raise DecryptionFailure("Sync payload is not an object")
    return data
