"""Exception types raised by the session store.

Every failure the store surfaces to a caller is one of these:

- NotFoundError: unknown session, window or tab id. No state changed.
- InvalidStateError: the request can't apply to the current state
  (restoring a session with no windows, moving a window out of range).
  Raised before any host call is issued.
- HostCallError: a host window/tab call failed. Inside a restoration
  these are caught per item and logged; elsewhere they propagate.
- PersistenceError: a storage write or read failed. In-memory state
  stays authoritative until the next successful write.
- VersionMismatchError: a persisted record declares a schema version
  this code does not understand. Never auto-upgraded.
"""


class TabVaultError(Exception):
    """Base class for all tabvault errors."""


class NotFoundError(TabVaultError):
    """Raised when a session, window or tab id is unknown."""


class InvalidStateError(TabVaultError):
    """Raised when an operation does not apply to the current state."""


class HostCallError(TabVaultError):
    """Raised when a host window/tab call fails."""


class PersistenceError(TabVaultError):
    """Raised when the storage backend fails to read or write."""


class VersionMismatchError(TabVaultError):
    """Raised when a persisted record has an unsupported version."""

    def __init__(self, record_type: str, version: object):
        self.record_type = record_type
        self.version = version
        super().__init__(f"Unsupported {record_type} object version: {version!r}")
