"""
Password-derived key material.

Three independent derivations from the master password:
    vault key  — PBKDF2-SHA256(password, salt), 256 bits, used as an AES-256-GCM key
    verifier   — PBKDF2-SHA256(password, salt || "verifier-v1"), stored locally to test unlocks
    sync token — SHA-256(password || ":sync-auth-token"), the only value sent to the server
"""

import base64
import hashlib
import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from syncvault.config.settings import MIN_PBKDF2_ITERATIONS

DEFAULT_ITERATIONS = 600_000
KEY_LENGTH = 32
SALT_LENGTH = 16

# Changing either constant invalidates every existing token / verifier.
SYNC_TOKEN_SUFFIX_V1 = ":sync-auth-token"
VERIFIER_CONTEXT_V1 = b"verifier-v1"


def generate_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be >= {MIN_PBKDF2_ITERATIONS}")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(str(password).encode("utf-8"))


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive the 256-bit vault key."""
    return _pbkdf2(password, salt, iterations)


def hash_password(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Base64 verifier for local unlock checks. Never equal to the vault key."""
    digest = _pbkdf2(password, salt + VERIFIER_CONTEXT_V1, iterations)
    return base64.b64encode(digest).decode("ascii")


def derive_sync_token(password: str) -> str:
    """Hex SHA-256 bearer credential for the Sync Service."""
    data = (str(password) + SYNC_TOKEN_SUFFIX_V1).encode("utf-8")
    return hashlib.sha256(data).hexdigest()
