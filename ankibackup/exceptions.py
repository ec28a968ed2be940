"""Backup engine exception types.

Convention:
- Every engine failure is a ``BackupError`` subclass carrying a stable ``kind``
  string. The kind is what gets written into Run Records and Rollback Events,
  so renaming one is a data migration.
- Failures during a tick are recorded and swallowed by the scheduler.
  Failures during a rollback are recorded and re-raised; the global handlers
  in ``ankibackup/main.py`` translate them into HTTP responses.
- ``LockHeld`` is not an error for scheduled ticks (the tick is a no-op); it
  only surfaces to callers that asked for a rollback.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base class for backup engine failures."""

    kind = "error"


class SyncFailure(BackupError):
    """The source refresh collaborator failed; the collection file is unchanged."""

    kind = "sync_error"


class SyncTimeout(SyncFailure):
    """The source refresh exceeded the configured timeout."""

    kind = "sync_timeout"


class StorageFailure(BackupError):
    """Disk I/O failed while staging, committing, reading or deleting a snapshot."""

    kind = "storage_error"


class MetadataFailure(BackupError):
    """The metadata store was unreachable or rejected a statement."""

    kind = "metadata_error"


class NotFound(BackupError):
    """The snapshot id is unknown."""

    kind = "not_found"


class Corrupt(BackupError):
    """A metadata row exists but its payload is missing or unreadable.

    Also raised when the active pointer references a snapshot that is gone.
    Surfaced as a standing health signal, not only as a one-off event.
    """

    kind = "corrupt"


class Conflict(BackupError):
    """A snapshot with the same id already exists in the metadata store."""

    kind = "conflict"


class LockHeld(BackupError):
    """Another orchestration run holds the run lock."""

    kind = "lock_held"
