from syncvault.sync.vault import Vault
from syncvault.sync.state import LocalStateStore
from syncvault.sync.pending import PendingOperationGuard, pending_removals
from syncvault.sync.cloud import SyncCloudClient
from syncvault.sync.engine import SyncEngine

__all__ = [
    "Vault",
    "LocalStateStore",
    "PendingOperationGuard",
    "pending_removals",
    "SyncCloudClient",
    "SyncEngine",
]
