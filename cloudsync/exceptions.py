"""Application-level exception types.

Convention:
- Provider operations never raise; they return a ``ProviderResult`` whose
  ``error_code`` names one of the categories below.  The sync engine turns
  those results into queue-item state changes.
- ``StorageUnavailable`` is the only error that escapes ``SyncEngine.drain()``
  and ``SyncEngine.enqueue()``: without durable state the engine cannot
  reason safely, so the caller must surface "cannot reach local storage".
- ``ValueError`` is used for input validation errors that are safe to show
  to users.
"""

from __future__ import annotations


class CloudSyncError(Exception):
    """Base class for cloudsync errors."""

    error_code = "error"


class AuthError(CloudSyncError):
    """Credentials are missing, invalid or expired."""

    error_code = "auth_error"


class NotFoundError(CloudSyncError):
    """The remote object does not exist."""

    error_code = "not_found"


class ConflictError(CloudSyncError):
    """Local and remote content diverged for the same logical record."""

    error_code = "conflict"


class TransientNetworkError(CloudSyncError):
    """Timeout, connection failure or 5xx response. Retried up to the ceiling."""

    error_code = "network_error"


class ConfigurationError(CloudSyncError):
    """Provider not configured or missing client secrets. Never retried."""

    error_code = "configuration_error"


class StorageUnavailable(CloudSyncError):
    """The local persistence layer cannot be opened or written."""

    error_code = "storage_unavailable"


class QueueFullError(CloudSyncError):
    """The offline queue reached its configured capacity."""

    error_code = "queue_full"


class OAuthStateError(CloudSyncError):
    """An OAuth state token is malformed, expired or already used."""

    error_code = "invalid_state"
