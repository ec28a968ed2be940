"""SQLAlchemy ORM models for the backup metadata store."""

from ankibackup.models.base import Base
from ankibackup.models.rollback import RollbackEvent
from ankibackup.models.run import RunRecord
from ankibackup.models.snapshot import Snapshot

__all__ = [
    "Base",
    "RollbackEvent",
    "RunRecord",
    "Snapshot",
]
