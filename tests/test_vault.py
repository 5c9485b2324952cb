"""Tests for the local vault and session key persistence."""

import json
import os
import stat

import pytest

from syncvault.errors import ValidationError, VaultLockedError, VaultNotInitializedError
from syncvault.sync import keys
from syncvault.sync.vault import SESSION_KEY_FILENAME, VAULT_FILENAME, SessionKeyStore, Vault

from conftest import PASSWORD


@pytest.fixture
def vault(config) -> Vault:
    return Vault(config=config)


class TestSetup:

    def test_setup_unlocks_and_persists_only_salt_and_verifier(self, vault, config):
        vault.setup(PASSWORD)
        assert vault.is_initialized
        assert vault.is_unlocked

        data = json.loads((config.client_path / VAULT_FILENAME).read_text())
        assert set(data) == {"version", "salt", "verifier", "iterations"}
        assert PASSWORD not in json.dumps(data)

    def test_short_password_rejected(self, vault):
        with pytest.raises(ValidationError):
            vault.setup("short")
        assert not vault.is_initialized

    def test_setup_again_changes_salt(self, vault):
        vault.setup(PASSWORD)
        first = vault.salt
        vault.setup(PASSWORD)
        assert vault.salt != first

    def test_get_key_while_locked(self, vault):
        vault.setup(PASSWORD)
        vault.lock()
        with pytest.raises(VaultLockedError):
            vault.get_key()


class TestUnlock:

    def test_correct_password(self, vault):
        vault.setup(PASSWORD)
        key = vault.get_key()
        vault.lock()
        assert vault.unlock(PASSWORD) is True
        assert vault.get_key() == key

    def test_wrong_password(self, vault):
        vault.setup(PASSWORD)
        vault.lock()
        assert vault.unlock("not the password") is False
        assert not vault.is_unlocked

    def test_unlock_without_vault(self, vault):
        with pytest.raises(VaultNotInitializedError):
            vault.unlock(PASSWORD)

    def test_unlock_from_sync_adopts_remote_salt(self, config, tmp_path):
        remote = Vault(directory=tmp_path / "remote", config=config)
        remote.setup(PASSWORD)

        fresh = Vault(directory=tmp_path / "fresh", config=config)
        fresh.unlock_from_sync(PASSWORD, remote.salt)
        assert fresh.get_key() == remote.get_key()

        # Later unlocks work offline
        fresh.lock()
        assert fresh.unlock(PASSWORD) is True

    def test_derive_from_sync_touches_nothing(self, vault):
        vault.setup(PASSWORD)
        own_salt = vault.salt
        own_key = vault.get_key()

        key, salt, iterations = vault.derive_from_sync("other password", b"r" * 16, 150_000)
        assert (salt, iterations) == (b"r" * 16, 150_000)
        assert key == keys.derive_key("other password", b"r" * 16, 150_000)
        assert vault.salt == own_salt
        assert vault.get_key() == own_key

        vault.adopt_sync_key("other password", salt, iterations, key)
        assert vault.iterations == 150_000
        vault.lock()
        assert vault.unlock("other password") is True

    def test_unlock_from_sync_without_any_salt(self, vault):
        with pytest.raises(VaultNotInitializedError):
            vault.unlock_from_sync(PASSWORD, None)

    def test_key_matches_derivation(self, vault, config):
        vault.setup(PASSWORD)
        assert vault.get_key() == keys.derive_key(PASSWORD, vault.salt, config.pbkdf2_iterations)


class TestSession:

    def test_restore_session_after_restart(self, vault, config):
        vault.setup(PASSWORD)
        key = vault.get_key()

        restarted = Vault(config=config)
        assert not restarted.is_unlocked
        assert restarted.restore_session() is True
        assert restarted.get_key() == key

    def test_lock_clears_session_file(self, vault, config):
        vault.setup(PASSWORD)
        vault.lock()
        assert not (config.client_path / SESSION_KEY_FILENAME).exists()
        assert Vault(config=config).restore_session() is False

    def test_session_file_is_private(self, vault, config):
        vault.setup(PASSWORD)
        mode = stat.S_IMODE(os.stat(config.client_path / SESSION_KEY_FILENAME).st_mode)
        assert mode == 0o600

    def test_corrupt_session_key_is_discarded(self, tmp_path):
        store = SessionKeyStore(tmp_path / "session.key")
        (tmp_path / "session.key").write_text("too-short")
        assert store.import_key() is None
        assert not (tmp_path / "session.key").exists()


class TestResetAndDestroy:

    def test_destroy_removes_everything(self, vault):
        vault.setup(PASSWORD)
        vault.destroy()
        assert not vault.is_initialized
        assert not vault.is_unlocked

    def test_reset_starts_over(self, vault):
        vault.setup(PASSWORD)
        old_salt = vault.salt
        vault.reset("a brand new password")
        assert vault.salt != old_salt
        vault.lock()
        assert vault.unlock("a brand new password") is True
        assert vault.unlock(PASSWORD) is False

    def test_status(self, vault):
        assert vault.status() == {"initialized": False, "unlocked": False}
        vault.setup(PASSWORD)
        assert vault.status() == {"initialized": True, "unlocked": True}
