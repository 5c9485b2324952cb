"""Tests for local state normalization and the encrypted state store."""

import pytest

from syncvault.errors import DecryptionFailure, VaultLockedError
from syncvault.sync.state import LocalStateStore, empty_state, has_data, normalize_state
from syncvault.sync.vault import Vault

from conftest import PASSWORD


class TestNormalizeState:

    def test_garbage_becomes_empty_state(self):
        assert normalize_state(None) == empty_state()
        assert normalize_state("text") == empty_state()

    def test_legacy_wrapped_accounts(self):
        state = normalize_state({"accounts": {"accounts": [{"id": "a"}, "junk"]}})
        assert state["accounts"] == [{"id": "a"}]

    def test_legacy_addon_list(self):
        state = normalize_state({"addons": [{"transportUrl": "x"}]})
        assert state["addons"] == {"version": "1.0", "savedAddons": [{"transportUrl": "x"}]}

    def test_legacy_failover_list(self):
        state = normalize_state({"failover": [{"id": "r1"}]})
        assert state["failover"] == {"rules": [{"id": "r1"}], "webhook": {"url": "", "enabled": False}}

    def test_keeps_name_and_synced_at(self):
        state = normalize_state({"name": "Home", "syncedAt": "2026-01-01T00:00:00+00:00"})
        assert state["name"] == "Home"
        assert state["syncedAt"] == "2026-01-01T00:00:00+00:00"

    def test_has_data(self):
        assert not has_data(empty_state())
        assert has_data({"accounts": [{"id": "a"}]})
        assert has_data({"addons": {"savedAddons": [{}]}})


class TestLocalStateStore:

    @pytest.fixture
    def store(self, config):
        vault = Vault(config=config)
        vault.setup(PASSWORD)
        return LocalStateStore(vault, config=config)

    def test_round_trip_is_encrypted_on_disk(self, store, config):
        state = empty_state()
        state["accounts"].append({"id": "acc-1", "addons": [{"transportUrl": "https://secret.example"}]})
        store.save(state)

        assert store.load()["accounts"] == state["accounts"]
        assert "secret.example" not in (config.client_path / "state.enc").read_text()

    def test_missing_file_loads_empty(self, store):
        assert store.load() == empty_state()

    def test_locked_vault(self, store, config):
        store.save(empty_state())
        Vault(config=config).lock()
        locked = LocalStateStore(Vault(config=config), config=config)
        with pytest.raises(VaultLockedError):
            locked.load()

    def test_other_key_cannot_read(self, store, config, tmp_path):
        store.save(empty_state())
        other = Vault(directory=tmp_path / "other", config=config)
        other.setup(PASSWORD)
        with pytest.raises(DecryptionFailure):
            LocalStateStore(other, directory=config.client_path).load()

    def test_clear(self, store):
        store.save(empty_state())
        store.clear()
        assert not store.exists
