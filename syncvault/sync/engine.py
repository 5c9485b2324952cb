"""
Sync orchestrator — claim, login, push, pull, force operations and auto-sync.

Lifecycle: register | login → unlock → sync_to_remote / sync_from_remote

Conflict policy is last-write-wins on the whole blob. Concurrent calls of the
same kind for an account share one in-flight task; pushes and pulls for an
account never overlap.
"""

import asyncio
import enum
import functools
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from syncvault.config.settings import Settings, settings as default_settings
from syncvault.errors import (
    AuthorizationError,
    DecryptionFailure,
    RegistrationError,
    SyncServerError,
    SyncServerUnavailable,
    SyncVaultError,
)
from syncvault.sync.cloud import SyncCloudClient
from syncvault.sync.encryption import (
    decrypt_sync_payload,
    encrypt_sync_payload,
    is_encrypted_payload,
    payload_iterations,
    payload_salt,
)
from syncvault.sync.keys import derive_sync_token
from syncvault.sync.pending import PendingOperationGuard, normalize_target, pending_removals
from syncvault.sync.state import LocalStateStore, empty_state, has_data, normalize_state
from syncvault.sync.vault import Vault

logger = logging.getLogger(__name__)

AUTH_FILENAME = "sync.json"

# (title, message, is_error), shown to the user as CLI output or toasts
Notifier = Callable[[str, str, bool], None]


class SyncStatus(str, enum.Enum):
    idle = "idle"
    syncing = "syncing"
    refreshing = "refreshing"
    error = "error"


@dataclass
class SyncAuth:
    id: str = ""
    token: str = ""
    name: str = ""
    is_authenticated: bool = False
    claimed: bool = False
    last_synced_at: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncEngine:
    """Orchestrates the client sync lifecycle for one local vault."""

    def __init__(
        self,
        vault: Optional[Vault] = None,
        state_store: Optional[LocalStateStore] = None,
        cloud: Optional[SyncCloudClient] = None,
        guard: Optional[PendingOperationGuard] = None,
        config: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = config or default_settings
        self._vault = vault or Vault(config=self._settings)
        self._state = state_store or LocalStateStore(self._vault, config=self._settings)
        self._cloud = cloud or SyncCloudClient(config=self._settings)
        self._guard = guard or pending_removals
        self._notifier = notifier
        self._clock = clock

        self._auth_path = self._settings.client_path / AUTH_FILENAME
        self._auth = self._load_auth()
        self._sync_state = SyncStatus.idle
        self._refresh_state = SyncStatus.idle
        self._last_error: Optional[str] = None
        self._last_push_at: Optional[float] = None

        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._is_visible: Callable[[], bool] = lambda: True

    # ── Properties ──────────────────────────────────────────────────

    @property
    def auth(self) -> SyncAuth:
        return self._auth

    @property
    def is_authenticated(self) -> bool:
        return self._auth.is_authenticated

    @property
    def last_synced_at(self) -> Optional[str]:
        return self._auth.last_synced_at

    @property
    def sync_state(self) -> SyncStatus:
        return self._sync_state

    @property
    def refresh_state(self) -> SyncStatus:
        return self._refresh_state

    @property
    def vault(self) -> Vault:
        return self._vault

    @property
    def state_store(self) -> LocalStateStore:
        return self._state

    # ── Register / Login ────────────────────────────────────────────

    async def register(self, password: str, name: str = "") -> str:
        """Create a local vault and claim a fresh id on the Sync Service.

        The local vault survives a failed claim; the next push claims the id.
        """
        await asyncio.to_thread(self._vault.setup, password)
        self._state.clear()
        self._state.save(empty_state())

        sync_id = str(uuid.uuid4())
        self._auth = SyncAuth(
            id=sync_id,
            token=derive_sync_token(password),
            name=name,
            is_authenticated=True,
        )
        self._save_auth()

        try:
            await self._run_exclusive(self._push)
        except (SyncServerUnavailable, SyncServerError) as e:
            logger.warning("Could not claim %s (%s); it will be claimed on the next push", sync_id, e)
            self._notify("Registration Failed", "Failed to register account on server.", error=True)
            raise RegistrationError(f"Failed to register account on server: {e}") from e

        logger.info("Registered sync id %s", sync_id)
        self._notify("Account Created", "Welcome to SyncVault.")
        return sync_id

    async def login(self, sync_id: str, password: str, silent: bool = False) -> dict:
        """Download the record for ``sync_id`` and replace local state with it.

        ``silent`` suppresses user-facing messages (opportunistic restores);
        errors are raised either way.
        """
        token = derive_sync_token(password)
        try:
            async with self._lock_for(sync_id):
                envelope = await self._cloud.fetch(sync_id, token)
                state = await self._open_envelope(envelope, password)
                self._auth = SyncAuth(
                    id=sync_id,
                    token=token,
                    name=state.get("name", ""),
                    is_authenticated=True,
                    claimed=True,
                )
                self._apply_remote(state, mirror=True)
        except SyncVaultError as e:
            self._notify("Login Failed", e.message, error=True, silent=silent)
            raise

        logger.info("Logged in to sync id %s", sync_id)
        self._notify("Login Successful", "Your data has been loaded.", silent=silent)
        return self._state.load()

    async def logout(self) -> None:
        """Forget the cloud identity and clear all local state."""
        self._clear_local(destroy_vault=False)
        self._notify("Logged Out", "See you next time.")

    # ── Unlock / Lock ───────────────────────────────────────────────

    async def unlock(self, password: str) -> bool:
        """Unlock the local vault, then pull so this device matches the cloud."""
        unlocked = await asyncio.to_thread(self._vault.unlock, password)
        if unlocked and self.is_authenticated:
            await self.sync_from_remote(silent=True)
        return unlocked

    def lock(self) -> None:
        self._vault.lock()

    async def reset_vault(self, password: str) -> None:
        """Start over with a new master password. Local state and the cloud login are lost."""
        await asyncio.to_thread(self._vault.reset, password)
        self._state.clear()
        self._state.save(empty_state())
        self._auth = SyncAuth()
        self._auth_path.unlink(missing_ok=True)
        logger.warning("Vault reset; local state cleared")

    # ── Push / Pull ─────────────────────────────────────────────────

    async def sync_to_remote(self, is_auto: bool = False) -> bool:
        """Encrypt local state and upload it. False when skipped or (auto) failed."""
        if not self._can_sync():
            return False

        if is_auto and self._in_cooldown():
            logger.debug("Auto-sync skipped: cooldown")
            return False

        try:
            await self._coalesce("push", self._push)
        except SyncVaultError as e:
            if is_auto:
                logger.error("Auto-sync to %s failed: %s", self._cloud.server_url, e)
                return False
            self._notify("Save Failed", e.message, error=True)
            raise

        if not is_auto:
            self._notify("Saved", "Changes saved to cloud.")
        return True

    async def sync_from_remote(self, silent: bool = True) -> bool:
        """Download, decrypt and replace local state. False when skipped or (silent) failed."""
        if not self._can_sync():
            return False

        try:
            needs_heal = await self._coalesce("pull", functools.partial(self._pull, False))
        except SyncVaultError as e:
            if silent:
                logger.warning("Refresh from cloud failed: %s", e)
                return False
            self._notify("Refresh Failed", e.message, error=True)
            raise

        if needs_heal:
            await self._heal_remote()
        return True

    refresh_from_cloud = sync_from_remote

    async def force_push_state(self) -> None:
        """Overwrite the remote record with local state. Destructive."""
        self._require_session()
        logger.warning("Force push requested for %s", self._auth.id)
        await self._run_exclusive(self._push)

    async def force_mirror_state(self) -> None:
        """Overwrite local state with the remote record. Destructive."""
        self._require_session()
        logger.warning("Force mirror requested for %s", self._auth.id)
        await self._run_exclusive(functools.partial(self._pull, True))

    # ── Account deletion ────────────────────────────────────────────

    async def delete_remote_account(self) -> bool:
        """Delete the remote record and all local data.

        Local data is cleared even when the server cannot be reached. Returns
        whether the remote delete succeeded.
        """
        if not self.is_authenticated:
            return False

        sync_id = self._auth.id
        remote_deleted = True
        try:
            await self._cloud.delete(sync_id, self._auth.token)
        except SyncVaultError as e:
            remote_deleted = False
            logger.error(
                "Remote delete of %s failed (%s); clearing local data anyway. "
                "The remote record may still exist.",
                sync_id, e,
            )

        self._clear_local(destroy_vault=True)
        return remote_deleted

    # ── Local mutations ─────────────────────────────────────────────

    async def remove_addon(self, account_id: str, transport_url: str) -> bool:
        """Remove an addon locally, push, and keep it hidden from pulls for a grace period."""
        self._guard.add_pending_removal(account_id, transport_url)
        try:
            state = self._state.load()
            target = normalize_target(transport_url)
            removed = False
            for account in state["accounts"]:
                if account.get("id") != account_id:
                    continue
                addons = account.get("addons") or []
                kept = [a for a in addons if normalize_target(a.get("transportUrl", "")) != target]
                removed = removed or len(kept) != len(addons)
                account["addons"] = kept
            self._state.save(state)
            await self.sync_to_remote(is_auto=True)
        finally:
            self._guard.release_later(
                account_id, transport_url, self._settings.pending_removal_grace_seconds,
            )
        return removed

    async def publish_automation(self) -> None:
        """Send the failover automation to the server-held automation store."""
        self._require_session()
        failover = self._state.load()["failover"]
        await self._cloud.put_automation(self._auth.id, self._auth.token, failover)
        logger.info("Published automation for %s", self._auth.id)

    # ── Auto-Sync Loop ──────────────────────────────────────────────

    async def start_auto_sync(self, is_visible: Optional[Callable[[], bool]] = None) -> None:
        """Start the background auto-sync loop.

        ``is_visible`` is polled before every tick; hidden ticks are skipped.
        """
        if is_visible is not None:
            self._is_visible = is_visible
        if self._auto_sync_task and not self._auto_sync_task.done():
            return
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("Auto-sync started (interval: %.0fs)", self._settings.sync_interval_seconds)

    async def stop_auto_sync(self) -> None:
        if self._auto_sync_task:
            self._auto_sync_task.cancel()
            try:
                await self._auto_sync_task
            except asyncio.CancelledError:
                pass
            self._auto_sync_task = None
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._settings.sync_interval_seconds)
                if not self._is_visible():
                    logger.debug("Auto-sync skipped: not visible")
                    continue
                if self._can_sync():
                    await self.sync_to_remote(is_auto=True)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Auto-sync error")

    # ── Status ──────────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "authenticated": self._auth.is_authenticated,
            "id": self._auth.id or None,
            "name": self._auth.name,
            "claimed": self._auth.claimed,
            "vault": self._vault.status(),
            "sync_state": self._sync_state.value,
            "refresh_state": self._refresh_state.value,
            "last_synced_at": self._auth.last_synced_at,
            "last_error": self._last_error,
            "auto_sync_running": (
                self._auto_sync_task is not None
                and not self._auto_sync_task.done()
            ),
            "sync_interval_seconds": self._settings.sync_interval_seconds,
            "server_url": self._cloud.server_url,
        }

    async def aclose(self) -> None:
        await self.stop_auto_sync()
        await self._cloud.aclose()

    # ── Operations (run under the account lock) ─────────────────────

    async def _push(self) -> None:
        sync_id, token = self._auth.id, self._auth.token
        self._sync_state = SyncStatus.syncing
        self._last_push_at = self._clock()
        try:
            synced_at = _now_iso()
            snapshot = {**self._state.load(), "name": self._auth.name, "syncedAt": synced_at}
            payload = encrypt_sync_payload(
                snapshot, self._vault.get_key(), self._vault.salt, self._vault.iterations
            )
            await self._cloud.push(sync_id, token, payload)
        except Exception as e:
            self._sync_state = SyncStatus.error
            self._last_error = str(e)
            raise

        # Bookkeeping happens here so it lands even if every caller went away.
        if self._auth.id == sync_id:
            self._auth.claimed = True
            self._auth.last_synced_at = synced_at
            self._save_auth()
        self._sync_state = SyncStatus.idle
        self._last_error = None
        logger.info("Pushed state for %s", sync_id)

    async def _pull(self, mirror: bool) -> bool:
        sync_id, token = self._auth.id, self._auth.token
        self._refresh_state = SyncStatus.refreshing
        try:
            envelope = await self._cloud.fetch(sync_id, token)
            state = await self._open_envelope(envelope)
            needs_heal = self._auth.id == sync_id and self._apply_remote(state, mirror)
        except Exception as e:
            self._refresh_state = SyncStatus.error
            self._last_error = str(e)
            raise

        self._refresh_state = SyncStatus.idle
        self._last_error = None
        logger.info("Pulled state for %s%s", sync_id, " (mirror)" if mirror else "")
        return needs_heal

    async def _heal_remote(self) -> None:
        try:
            await self._coalesce("push", self._push)
        except SyncVaultError as e:
            logger.error("Could not push local state over empty remote: %s", e)

    # ── Helpers ─────────────────────────────────────────────────────

    async def _open_envelope(self, envelope, password: Optional[str] = None) -> dict:
        if is_encrypted_payload(envelope):
            if password is None:
                key = self._vault.get_key()
            else:
                key, salt, iterations = await asyncio.to_thread(
                    self._vault.derive_from_sync,
                    password,
                    payload_salt(envelope),
                    payload_iterations(envelope),
                )
            try:
                data = decrypt_sync_payload(envelope, key)
            except (ValueError, DecryptionFailure) as e:
                logger.error("Failed to decrypt cloud data: %s", e)
                raise DecryptionFailure(
                    "Failed to decrypt cloud data. It may be corrupted or the key lost."
                ) from e
            if password is not None:
                # The local vault only changes once the backup has opened.
                await asyncio.to_thread(self._vault.adopt_sync_key, password, salt, iterations, key)
            return normalize_state(data)

        # Legacy: plaintext state
        if password is not None:
            if self._vault.is_initialized:
                await asyncio.to_thread(self._vault.unlock_from_sync, password, None)
            else:
                await asyncio.to_thread(self._vault.setup, password)
        return normalize_state(envelope)

    def _apply_remote(self, state: dict, mirror: bool) -> bool:
        """Replace local state with ``state``. True when the remote needs healing instead."""
        for account in state["accounts"]:
            if account.get("id") and isinstance(account.get("addons"), list):
                account["addons"] = self._guard.filter_addons(account["id"], account["addons"])

        if not mirror and not has_data(state) and self._state.exists and has_data(self._state.load()):
            logger.warning("Anti-wipe triggered: remote is empty. Keeping local state.")
            return True

        self._state.save(state)
        self._auth.name = state.get("name", self._auth.name)
        self._auth.last_synced_at = state.get("syncedAt") or _now_iso()
        self._save_auth()
        return False

    def _clear_local(self, destroy_vault: bool) -> None:
        if self._vault.is_unlocked and self._state.exists:
            try:
                accounts = self._state.load()["accounts"]
            except DecryptionFailure:
                accounts = []
            for account in accounts:
                if account.get("id"):
                    self._guard.clear_account(account["id"])
        self._state.clear()
        if destroy_vault:
            self._vault.destroy()
        else:
            self._vault.lock()
        self._auth = SyncAuth()
        self._auth_path.unlink(missing_ok=True)
        self._last_push_at = None

    def _can_sync(self) -> bool:
        return self._auth.is_authenticated and self._vault.is_unlocked

    def _require_session(self) -> None:
        if not self._auth.is_authenticated:
            raise AuthorizationError("Not logged in to Cloud Sync")
        self._vault.get_key()  # raises VaultLockedError

    def _in_cooldown(self) -> bool:
        if self._last_push_at is None:
            return False
        return self._clock() - self._last_push_at < self._settings.sync_cooldown_seconds

    def _lock_for(self, sync_id: str) -> asyncio.Lock:
        return self._locks.setdefault(sync_id, asyncio.Lock())

    async def _run_exclusive(self, operation: Callable[[], Awaitable]):
        async with self._lock_for(self._auth.id):
            return await operation()

    async def _coalesce(self, kind: str, operation: Callable[[], Awaitable]):
        """Share one in-flight task per (kind, account) between concurrent callers."""
        key = (kind, self._auth.id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_exclusive(operation))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        # Shielded: a cancelled caller must not abort the request for the others.
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("%s for %s finished with %r", key[0], key[1], task.exception())

    def _notify(self, title: str, message: str, error: bool = False, silent: bool = False) -> None:
        if silent or self._notifier is None:
            return
        self._notifier(title, message, error)

    def _load_auth(self) -> SyncAuth:
        if not self._auth_path.exists():
            return SyncAuth()
        data = json.loads(self._auth_path.read_text(encoding="utf-8"))
        return SyncAuth(**{k: v for k, v in data.items() if k in SyncAuth.__dataclass_fields__})

    def _save_auth(self) -> None:
        # The token is a password substitute; keep the file private.
        self._auth_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._auth_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(self._auth), f, indent=2)
