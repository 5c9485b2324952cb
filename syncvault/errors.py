"""
Error taxonomy shared by the Sync Service, the storage backend and the client engine.

Every error carries the HTTP status it maps to, so the API layer can translate
it with one exception handler and the client can map statuses back.
"""


class SyncVaultError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ConfigurationError(SyncVaultError):
    """Unusable configuration. Fatal at boot."""


class DatabaseConnectionError(SyncVaultError):
    """Storage unreachable after all retries."""

    status_code = 503


class ValidationError(SyncVaultError):
    status_code = 400


class AuthorizationError(SyncVaultError):
    status_code = 401


class NotFoundError(SyncVaultError):
    status_code = 404


class PayloadTooLargeError(SyncVaultError):
    status_code = 413


class DecryptionFailure(SyncVaultError):
    """All candidate keys failed: data may be corrupted or the key lost."""


# ── Client-side ─────────────────────────────────────────────────

class RegistrationError(SyncVaultError):
    status_code = 503


class VaultNotInitializedError(SyncVaultError):
    status_code = 409


class VaultLockedError(SyncVaultError):
    status_code = 423


class SyncServerUnavailable(SyncVaultError):
    status_code = 503


class SyncServerError(SyncVaultError):
    status_code = 502
