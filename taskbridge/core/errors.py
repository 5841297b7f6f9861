"""Exception hierarchy shared by the sync core and its collaborators.

Errors fall into four groups:

- Transport errors: a single remote call failed. Counted per task, never
  fatal to a cycle (except authentication, see ``CalDAVAuthError``).
- Malformed-entry errors: the entry text codec refused to emit an update.
  The engine falls back to rebuilding the entry and logs a warning.
- Missing-remote-entry errors: a mapped task's remote counterpart is gone.
  Reported, never auto-healed.
- Configuration errors: the server is unreachable or the credentials are
  wrong. Fatal to the cycle.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskbridge.core.models import SyncResult


class TaskBridgeError(Exception):
    """Base class for all TaskBridge errors."""


class TransportError(TaskBridgeError):
    """A call to the remote calendar server failed."""


class ConfigurationError(TaskBridgeError):
    """The cycle cannot run with the current settings or credentials."""


class MalformedEntryError(TaskBridgeError):
    """A remote entry failed structural validation."""

    def __init__(self, message: str, violations: list[str] | None = None):
        super().__init__(message)
        self.violations = violations or []


class MissingRemoteEntryError(TaskBridgeError):
    """A mapped task points at a remote entry that no longer exists."""

    def __init__(self, identifier: str, remote_uid: str):
        super().__init__(
            f"Remote entry {remote_uid} for task {identifier} no longer exists on the server"
        )
        self.identifier = identifier
        self.remote_uid = remote_uid


class NoteStoreError(TaskBridgeError):
    """Reading or rewriting a task line in the local note store failed."""


class PersistenceError(TaskBridgeError):
    """The mapping store could not be written to disk."""


class SyncCycleError(TaskBridgeError):
    """A reconciliation cycle aborted after saving its partial progress."""

    def __init__(self, cause: BaseException, result: SyncResult):
        super().__init__(f"Sync cycle aborted: {cause}")
        self.cause = cause
        self.result = result
