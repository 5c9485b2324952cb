"""
Local zero-knowledge vault — key derivation and session management.

vault.json holds only the random salt and a PBKDF2 verifier. The derived key
lives in memory and, while the session lasts, in session.key so it need not be
re-derived on every start. Losing session.key only forces a re-derivation.
"""

import base64
import binascii
import hmac
import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.errors import ValidationError, VaultLockedError, VaultNotInitializedError
from syncvault.sync import keys

logger = logging.getLogger(__name__)

VAULT_FILENAME = "vault.json"
SESSION_KEY_FILENAME = "session.key"


class SessionKeyStore:
    """Session-scoped persistence of the raw vault key."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def export_key(self, key: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(base64.b64encode(key).decode("ascii"))

    def import_key(self) -> Optional[bytes]:
        if not self._path.exists():
            return None
        try:
            key = base64.b64decode(self._path.read_text(encoding="ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.error("Failed to load session key; discarding it")
            self.clear()
            return None
        if len(key) != keys.KEY_LENGTH:
            logger.error("Session key has the wrong length; discarding it")
            self.clear()
            return None
        return key

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class Vault:
    """Manages the password-derived key lifecycle for one client directory."""

    def __init__(self, directory: Optional[Path] = None, config: Optional[Settings] = None):
        self._settings = config or default_settings
        self._dir = Path(directory or self._settings.client_path)
        self._vault_path = self._dir / VAULT_FILENAME
        self._session = SessionKeyStore(self._dir / SESSION_KEY_FILENAME)
        self._iterations = self._settings.pbkdf2_iterations
        self._session_key: Optional[bytearray] = None
        self._op_lock = threading.Lock()

    # ── Public API ──────────────────────────────────────────────

    @property
    def is_initialized(self) -> bool:
        return self._vault_path.exists()

    @property
    def is_unlocked(self) -> bool:
        return self._session_key is not None

    @property
    def salt(self) -> Optional[bytes]:
        if not self.is_initialized:
            return None
        return base64.b64decode(self._read_vault()["salt"])

    @property
    def iterations(self) -> int:
        if not self.is_initialized:
            return self._iterations
        return self._read_vault().get("iterations", self._iterations)

    def get_key(self) -> bytes:
        """Return a *copy* of the session key. Raises if locked."""
        with self._op_lock:
            if self._session_key is None:
                raise VaultLockedError("Vault is locked")
            return bytes(self._session_key)

    # ── Setup ───────────────────────────────────────────────────

    def setup(self, password: str) -> None:
        """First-time initialisation. Overwrites any previous vault material."""
        self._check_password(password)
        with self._op_lock:
            salt = keys.generate_salt()
            verifier = keys.hash_password(password, salt, self._iterations)
            derived = keys.derive_key(password, salt, self._iterations)
            self._write_vault(salt, verifier)
            self._set_session_key(derived)
            logger.info("Vault initialized")

    def reset(self, password: str) -> None:
        """Wipe all local vault material and start over. Destructive."""
        self._check_password(password)
        self.destroy()
        self.setup(password)

    # ── Unlock / Lock ───────────────────────────────────────────

    def unlock(self, password: str) -> bool:
        """False for a wrong password. Raises VaultNotInitializedError if there is no vault."""
        with self._op_lock:
            vault_data = self._read_vault()
            salt = base64.b64decode(vault_data["salt"])
            iterations = vault_data.get("iterations", self._iterations)
            verifier = keys.hash_password(password, salt, iterations)

            if not hmac.compare_digest(verifier, vault_data["verifier"]):
                return False

            self._set_session_key(keys.derive_key(password, salt, iterations))
            logger.info("Vault unlocked")
            return True

    def derive_from_sync(
        self,
        password: str,
        salt: Optional[bytes] = None,
        iterations: Optional[int] = None,
    ) -> tuple[bytes, bytes, int]:
        """Derive the key for a downloaded backup without touching vault state.

        Falls back to the local salt when the backup carries none, and to the
        configured iteration count. Returns ``(key, salt, iterations)``.
        """
        if salt is None and self.is_initialized:
            salt = base64.b64decode(self._read_vault()["salt"])
        if salt is None:
            raise VaultNotInitializedError(
                "Encryption metadata (salt) is missing from this account backup."
            )
        iterations = iterations or self._iterations
        return keys.derive_key(password, salt, iterations), salt, iterations

    def adopt_sync_key(self, password: str, salt: bytes, iterations: int, key: bytes) -> None:
        """Persist the backup's salt with a fresh verifier and make ``key`` the session key."""
        verifier = keys.hash_password(password, salt, iterations)
        with self._op_lock:
            self._write_vault(salt, verifier, iterations)
            self._set_session_key(key)
            logger.info("Vault unlocked from sync")

    def unlock_from_sync(
        self,
        password: str,
        salt: Optional[bytes] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Adopt the salt downloaded from the Sync Service and unlock with it."""
        key, salt, iterations = self.derive_from_sync(password, salt, iterations)
        self.adopt_sync_key(password, salt, iterations, key)

    def restore_session(self) -> bool:
        """Reload the key saved for this session, if any."""
        if not self.is_initialized:
            return False
        key = self._session.import_key()
        if key is None:
            return False
        with self._op_lock:
            self._session_key = bytearray(key)
        logger.info("Vault session restored")
        return True

    def lock(self) -> None:
        with self._op_lock:
            self._wipe_session_key()
            self._session.clear()
            logger.info("Vault locked")

    def destroy(self) -> None:
        """Remove the vault file and the session key."""
        self.lock()
        self._vault_path.unlink(missing_ok=True)
        logger.info("Vault material removed")

    def status(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "unlocked": self.is_unlocked,
        }

    # ── Internal ────────────────────────────────────────────────

    def _check_password(self, password: str) -> None:
        if len(password or "") < self._settings.password_min_length:
            raise ValidationError(
                f"Password must be at least {self._settings.password_min_length} characters"
            )

    def _read_vault(self) -> dict:
        if not self.is_initialized:
            raise VaultNotInitializedError(
                "Vault not initialized. Set up a master password or log in via Cloud Sync."
            )
        return json.loads(self._vault_path.read_text(encoding="utf-8"))

    def _write_vault(self, salt: bytes, verifier: str, iterations: Optional[int] = None) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        vault_data = {
            "version": 1,
            "salt": base64.b64encode(salt).decode("ascii"),
            "verifier": verifier,
            "iterations": iterations or self._iterations,
        }
        self._vault_path.write_text(json.dumps(vault_data, indent=2), encoding="utf-8")

    def _set_session_key(self, key: bytes) -> None:
        self._wipe_session_key()
        self._session_key = bytearray(key)
        self._session.export_key(key)

    def _wipe_session_key(self) -> None:
        if self._session_key is not None:
            self._wipe(self._session_key)
            self._session_key = None

    @staticmethod
    def _wipe(buf: bytearray) -> None:
        for i in range(len(buf)):
            buf[i] = 0
