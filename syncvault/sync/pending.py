"""
Pending-operation guard.

Tracks addons being deleted locally so a background pull that still sees them
upstream does not bring them back ("zombie addons"). In-process only: markers
are not persisted and are invisible to other processes or replicas.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)


def normalize_target(target_id: str) -> str:
    """Canonical, case-insensitive form of an addon transport URL or id."""
    value = str(target_id).strip()
    if value.lower().startswith("stremio://"):
        value = "https://" + value[len("stremio://"):]
    return value.rstrip("/").lower()


class PendingOperationGuard:

    def __init__(self):
        self._pending_removals: dict[str, set[str]] = {}
        self._observers: list[Callable[[], None]] = []

    def add_pending_removal(self, account_id: str, target_id: str) -> None:
        """Mark a target as being deleted for an account."""
        self._pending_removals.setdefault(account_id, set()).add(normalize_target(target_id))
        self._notify()

    def remove_pending_removal(self, account_id: str, target_id: str) -> None:
        pending = self._pending_removals.get(account_id)
        if pending is None:
            return
        pending.discard(normalize_target(target_id))
        if not pending:
            del self._pending_removals[account_id]
        self._notify()

    def is_pending_removal(self, account_id: str, target_id: str) -> bool:
        pending = self._pending_removals.get(account_id)
        return pending is not None and normalize_target(target_id) in pending

    def clear_account(self, account_id: str) -> None:
        self._pending_removals.pop(account_id, None)
        self._notify()

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` for every mutation. Returns an unsubscribe function."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def filter_addons(
        self,
        account_id: str,
        addons: Iterable[dict],
        key: str = "transportUrl",
    ) -> list[dict]:
        """Drop addons that are pending removal for ``account_id``."""
        return [
            addon for addon in addons
            if not (addon.get(key) and self.is_pending_removal(account_id, addon[key]))
        ]

    def release_later(
        self,
        account_id: str,
        target_id: str,
        delay: float,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> asyncio.TimerHandle:
        """Clear a marker after a grace period on the running event loop."""
        loop = loop or asyncio.get_running_loop()
        return loop.call_later(delay, self.remove_pending_removal, account_id, target_id)

    def _notify(self) -> None:
        for callback in list(self._observers):
            try:
                callback()
            except Exception:
                logger.exception("Pending-removal observer failed")


# Module-level singleton
pending_removals = PendingOperationGuard()
