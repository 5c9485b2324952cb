"""
Server-held secret chain for at-rest field encryption.

Order: explicitly configured secrets first (current, then previous ones, newest
first), the generated fallback secret from ``server_secret.key`` last. The
first element encrypts; every element is tried when decrypting. A chain longer
than ``max_secrets`` only logs a warning: dropping an entry would strand the
values sealed under it.

The fallback file is written once, when no secret is configured, and never
overwritten, so data sealed before an operator sets SERVER_SECRET stays
readable afterwards.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.sync import encryption

logger = logging.getLogger(__name__)


class ServerSecretChain:

    def __init__(
        self,
        secret_path: Path,
        configured: Sequence[str] = (),
        max_secrets: int = 5,
    ):
        self._secret_path = Path(secret_path)
        self._configured = [s for s in configured if s]
        self._max_secrets = max(1, max_secrets)
        self._chain: list[str] = []

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "ServerSecretChain":
        config = config or default_settings
        configured = []
        if config.server_secret:
            configured.append(config.server_secret)
        configured.extend(config.server_secret_previous)
        chain = cls(
            config.server_secret_path,
            configured=configured,
            max_secrets=config.max_server_secrets,
        )
        chain.load()
        return chain

    # ── Public API ──────────────────────────────────────────────

    @property
    def current(self) -> str:
        if not self._chain:
            self.load()
        return self._chain[0]

    @property
    def candidates(self) -> list[str]:
        if not self._chain:
            self.load()
        return list(self._chain)

    def load(self) -> list[str]:
        chain: list[str] = []
        for secret in self._configured:
            if secret not in chain:
                chain.append(secret)

        generated = self._read_secret_file()
        if generated is None and not chain:
            generated = self._generate_secret_file()
        if generated is not None and generated not in chain:
            chain.append(generated)

        if len(chain) > self._max_secrets:
            logger.warning(
                "Secret chain has %d entries (limit %d). All are still tried when "
                "decrypting; run rotate-secrets, then retire the oldest.",
                len(chain), self._max_secrets,
            )

        self._chain = chain
        logger.info(
            "Server secret chain loaded (%d configured, fallback file: %s)",
            len(self._configured), "yes" if generated else "no",
        )
        return list(chain)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        return encryption.encrypt(plaintext, self.current)

    def decrypt(self, encoded: Any) -> Any:
        return encryption.decrypt(encoded, self.candidates)

    def reencrypt(self, encoded: Any) -> Any:
        """Re-seal a value under the current secret. None if it cannot be opened."""
        plaintext = self.decrypt(encoded)
        if plaintext is None:
            return None
        return self.encrypt(plaintext)

    # ── Internal ────────────────────────────────────────────────

    def _read_secret_file(self) -> Optional[str]:
        if not self._secret_path.exists():
            return None
        secret = self._secret_path.read_text(encoding="utf-8").strip()
        return secret or None

    def _generate_secret_file(self) -> str:
        secret = encryption.generate_random_key()
        self._secret_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Another process won the race; its secret is the one to keep.
            return self._read_secret_file() or secret
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(secret)
        logger.warning(
            "No SERVER_SECRET configured. Generated a fallback secret at %s; "
            "keep this file, it is required to decrypt existing data.",
            self._secret_path,
        )
        return secret
