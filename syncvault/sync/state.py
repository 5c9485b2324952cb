"""
Local configuration state, encrypted at rest with the vault key.

The state is the blob that travels to the Sync Service: accounts (each with
its addon list), the saved-addon library, profiles and failover automation.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Optional

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.sync.encryption import decrypt_with_key, encrypt_with_key
from syncvault.sync.vault import Vault

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.enc"

DEFAULT_STATE: dict = {
    "accounts": [],
    "addons": {"version": "1.0", "savedAddons": []},
    "profiles": [],
    "failover": {"rules": [], "webhook": {"url": "", "enabled": False}},
}


def empty_state() -> dict:
    return copy.deepcopy(DEFAULT_STATE)


def normalize_state(data: Any) -> dict:
    """Coerce a downloaded or legacy state into the expected shape."""
    if not isinstance(data, dict):
        data = {}
    state = empty_state()

    accounts = data.get("accounts")
    if isinstance(accounts, dict):
        # Legacy exports wrapped the list: {"accounts": {"accounts": [...]}}
        accounts = accounts.get("accounts")
    if isinstance(accounts, list):
        state["accounts"] = [a for a in accounts if isinstance(a, dict)]

    addons = data.get("addons")
    if isinstance(addons, list):
        state["addons"]["savedAddons"] = addons
    elif isinstance(addons, dict):
        state["addons"] = {
            "version": addons.get("version", "1.0"),
            "savedAddons": list(addons.get("savedAddons") or []),
        }

    if isinstance(data.get("profiles"), list):
        state["profiles"] = data["profiles"]

    failover = data.get("failover")
    if isinstance(failover, list):
        # Legacy format: just rules
        state["failover"]["rules"] = failover
    elif isinstance(failover, dict):
        state["failover"]["rules"] = list(failover.get("rules") or [])
        if isinstance(failover.get("webhook"), dict):
            state["failover"]["webhook"] = failover["webhook"]

    for field in ("name", "syncedAt"):
        if data.get(field) is not None:
            state[field] = data[field]
    return state


def has_data(state: dict) -> bool:
    return bool(state.get("accounts")) or bool(state.get("addons", {}).get("savedAddons"))


class LocalStateStore:

    def __init__(self, vault: Vault, directory: Optional[Path] = None, config: Optional[Settings] = None):
        config = config or default_settings
        self._vault = vault
        self._path = Path(directory or config.client_path) / STATE_FILENAME

    @property
    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> dict:
        if not self._path.exists():
            return empty_state()
        plaintext = decrypt_with_key(self._path.read_text(encoding="ascii"), self._vault.get_key())
        return normalize_state(json.loads(plaintext))

    def save(self, state: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        sealed = encrypt_with_key(json.dumps(state, separators=(",", ":")), self._vault.get_key())
        self._path.write_text(sealed, encoding="ascii")

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
        logger.info("Local state cleared")
