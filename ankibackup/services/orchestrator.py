"""Backup and rollback orchestration.

A tick moves through::

    idle -> syncing -> fingerprinting -> (skip | staging -> stats_extraction
         -> committing -> recording) -> pruning -> idle

and any step may end in ``failed``. Every tick that gets past the run lock
leaves exactly one Run Record. A rollback repoints the Active Pointer and
leaves exactly one Rollback Event. Both hold the run lock for their whole
duration, so they never interleave.

Ordering per snapshot: stage, commit (atomic rename), insert row, then the
pointer may move to it and it becomes eligible for pruning. Pruning deletes
the row before the directory.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from ankibackup.exceptions import (
    BackupError,
    Conflict,
    Corrupt,
    LockHeld,
    MetadataFailure,
    NotFound,
    StorageFailure,
    SyncFailure,
    SyncTimeout,
)
from ankibackup.filesystem.repository import SnapshotSidecar, snapshot_sort_key
from ankibackup.models import RollbackEvent, RunRecord, Snapshot
from ankibackup.services.datetime_service import as_utc, format_snapshot_timestamp, now_utc
from ankibackup.services.fingerprint import compute_fingerprint
from ankibackup.services.stats_service import try_extract_stats

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from pathlib import Path

    from ankibackup.config import Settings
    from ankibackup.filesystem.pointer import ActivePointer, PointerState
    from ankibackup.filesystem.repository import BackupRepository, StagingHandle
    from ankibackup.filesystem.run_lock import RunLock
    from ankibackup.services.metadata_store import MetadataStore
    from ankibackup.services.stats_service import SnapshotStats
    from ankibackup.services.sync_service import SourceRefresher, SyncResult

    StatsExtractor = Callable[[Path], Awaitable[SnapshotStats | None]]

logger = logging.getLogger(__name__)

T = TypeVar("T")

FINGERPRINT_ERROR = "fingerprint_error"
CANCELLED = "cancelled"


class RunState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    FINGERPRINTING = "fingerprinting"
    SKIP = "skip"
    STAGING = "staging"
    STATS_EXTRACTION = "stats_extraction"
    COMMITTING = "committing"
    RECORDING = "recording"
    PRUNING = "pruning"
    FAILED = "failed"


class Trigger(StrEnum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    CATCH_UP = "catch_up"
    STARTUP = "startup"


class RunOutcome(StrEnum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"
    # Lock was held; nothing ran and nothing is recorded.
    BUSY = "busy"


class SkipReason(StrEnum):
    UNCHANGED = "unchanged"
    EMPTY_SOURCE = "empty_source"


@dataclass
class BackupPolicy:
    """Orchestration knobs derived from settings."""

    retention_days: int = 90
    retention_min_keep: int = 1
    skip_empty_first_run: bool = False
    pointer_follows_latest: bool = True
    sync_timeout_seconds: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> BackupPolicy:
        return cls(
            retention_days=settings.retention_days,
            retention_min_keep=settings.retention_min_keep,
            skip_empty_first_run=settings.skip_empty_first_run,
            pointer_follows_latest=settings.pointer_follows_latest,
            sync_timeout_seconds=settings.sync_timeout_seconds,
        )


@dataclass
class PruneReport:
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class TickResult:
    """What a single tick did."""

    trigger: str
    outcome: RunOutcome
    snapshot_id: str | None = None
    reason: str | None = None
    detail: str | None = None
    content_hash: str | None = None
    pruned: PruneReport = field(default_factory=PruneReport)
    run_id: int | None = None
    cancel_deferred: bool = field(default=False, repr=False)


@dataclass
class RollbackResult:
    target_snapshot_id: str
    previous_snapshot_id: str | None
    result: str
    event_id: int | None = None


@dataclass
class RecoveryReport:
    staging_removed: list[str] = field(default_factory=list)
    orphans_removed: list[str] = field(default_factory=list)
    corrupt: list[str] = field(default_factory=list)
    pointer_issue: str | None = None
    skipped_lock_held: bool = False


@dataclass
class RebuildReport:
    inserted: list[str] = field(default_factory=list)
    already_known: int = 0
    failed: list[str] = field(default_factory=list)


class BackupOrchestrator:
    """Owns the tick and rollback state machines."""

    def __init__(
        self,
        *,
        store: MetadataStore,
        repository: BackupRepository,
        pointer: ActivePointer,
        run_lock: RunLock,
        refresher: SourceRefresher,
        policy: BackupPolicy | None = None,
        stats_extractor: StatsExtractor = try_extract_stats,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.repository = repository
        self.pointer = pointer
        self.run_lock = run_lock
        self.refresher = refresher
        self.policy = policy or BackupPolicy()
        self._stats_extractor = stats_extractor
        self._clock = clock
        self.state = RunState.IDLE
        self.last_result: TickResult | None = None
        # Standing health signal: rows whose payload failed verification.
        self.corrupt_snapshots: set[str] = set()
        self.pointer_issue: str | None = None

    def _set_state(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state, state)
        self.state = state

    # -- tick --------------------------------------------------------------

    async def run_tick(self, trigger: str = Trigger.SCHEDULED) -> TickResult:
        """Run one backup tick. Overlapping ticks are dropped, not queued."""
        try:
            acquired = await self.run_lock.try_acquire()
        except StorageFailure as exc:
            result = self._failure(trigger, exc.kind, str(exc))
            await self._record_run(result, self._clock())
            self.last_result = result
            logger.error("Tick (%s) failed: %s: %s", trigger, result.reason, result.detail)
            return result
        if not acquired:
            logger.info("Skipping %s tick: another run holds the run lock", trigger)
            return TickResult(trigger=trigger, outcome=RunOutcome.BUSY)

        started_at = self._clock()
        try:
            try:
                result = await self._tick_locked(trigger)
            except asyncio.CancelledError:
                # Only reachable before commit; commit and insert are shielded.
                self._set_state(RunState.FAILED)
                cancelled = self._failure(trigger, CANCELLED, "Tick cancelled before commit")
                await _run_to_completion(self._record_run(cancelled, started_at))
                self.last_result = cancelled
                logger.warning("Tick (%s) cancelled before commit", trigger)
                raise
            if result.outcome is RunOutcome.FAILED:
                self._set_state(RunState.FAILED)
            await self._record_run(result, started_at)
        finally:
            self._set_state(RunState.IDLE)
            self.run_lock.release()

        self.last_result = result
        if result.outcome is RunOutcome.FAILED:
            logger.error(
                "Tick (%s) failed: %s: %s", trigger, result.reason, result.detail or "no detail"
            )
        else:
            logger.info(
                "Tick (%s) finished: %s %s",
                trigger,
                result.outcome,
                result.snapshot_id or result.reason or "",
            )
        if result.cancel_deferred:
            raise asyncio.CancelledError
        return result

    async def _tick_locked(self, trigger: str) -> TickResult:
        self._set_state(RunState.SYNCING)
        try:
            sync = await asyncio.wait_for(
                self.refresher.refresh(), timeout=self.policy.sync_timeout_seconds
            )
        except TimeoutError:
            exc = SyncTimeout(
                f"Source refresh exceeded {self.policy.sync_timeout_seconds:g}s timeout"
            )
            return self._failure(trigger, exc.kind, str(exc))
        except SyncFailure as exc:
            return self._failure(trigger, exc.kind, str(exc))
        except OSError as exc:
            return self._failure(trigger, SyncFailure.kind, str(exc))

        self._set_state(RunState.FINGERPRINTING)
        try:
            source_size = sync.collection_path.stat().st_size
            content_hash = await asyncio.to_thread(
                compute_fingerprint, sync.collection_path, sync.manifest
            )
        except OSError as exc:
            return self._failure(trigger, FINGERPRINT_ERROR, str(exc))

        try:
            latest = await self.store.latest_snapshot()
        except MetadataFailure as exc:
            return self._failure(trigger, exc.kind, str(exc))

        if latest is not None and latest.content_hash == content_hash:
            self._set_state(RunState.SKIP)
            result = TickResult(
                trigger=trigger,
                outcome=RunOutcome.SKIPPED,
                reason=SkipReason.UNCHANGED,
                content_hash=content_hash,
            )
        elif latest is None and source_size == 0 and self.policy.skip_empty_first_run:
            self._set_state(RunState.SKIP)
            result = TickResult(
                trigger=trigger,
                outcome=RunOutcome.SKIPPED,
                reason=SkipReason.EMPTY_SOURCE,
                content_hash=content_hash,
            )
        else:
            result = await self._create_snapshot(trigger, sync)
            if result.outcome is RunOutcome.FAILED:
                return result

        if not result.cancel_deferred:
            self._set_state(RunState.PRUNING)
            try:
                result.pruned = await self.prune()
            except asyncio.CancelledError:
                # The outcome is already decided; record it, then re-raise.
                result.cancel_deferred = True
        return result

    async def _create_snapshot(self, trigger: str, sync: SyncResult) -> TickResult:
        created_at = self._clock()
        try:
            snapshot_id = await self.allocate_id(created_at)
        except MetadataFailure as exc:
            return self._failure(trigger, exc.kind, str(exc))

        self._set_state(RunState.STAGING)
        try:
            handle = self.repository.stage(snapshot_id)
        except StorageFailure as exc:
            return self._failure(trigger, exc.kind, str(exc))

        try:
            size_bytes = await asyncio.to_thread(handle.write_payload, sync.collection_path)
            # Hash the staged copy so the recorded hash always matches the payload.
            content_hash = await asyncio.to_thread(
                compute_fingerprint, handle.payload_path, sync.manifest
            )

            self._set_state(RunState.STATS_EXTRACTION)
            stats = await self._extract_stats(handle.payload_path)

            sidecar = SnapshotSidecar(
                content_hash=content_hash,
                created_at=created_at,
                size_bytes=size_bytes,
                stats=stats,
                source_revision=sync.source_revision,
                sync_duration_ms=sync.sync_duration_ms,
                manifest=list(sync.manifest),
            )
            handle.write_sidecar(sidecar)
        except (StorageFailure, OSError) as exc:
            self.repository.discard(handle)
            return self._failure(trigger, StorageFailure.kind, str(exc))
        except BaseException:
            self.repository.discard(handle)
            raise

        self._set_state(RunState.COMMITTING)
        result, cancelled = await _run_to_completion(
            self._commit_and_insert(trigger, handle, sidecar)
        )
        result.cancel_deferred = cancelled
        return result

    async def _extract_stats(self, payload_path: Path) -> SnapshotStats | None:
        try:
            return await self._stats_extractor(payload_path)
        except Exception as exc:
            logger.warning("Stats extraction raised, storing no stats: %s", exc)
            return None

    async def _commit_and_insert(
        self, trigger: str, handle: StagingHandle, sidecar: SnapshotSidecar
    ) -> TickResult:
        try:
            await asyncio.to_thread(self.repository.commit, handle)
        except StorageFailure as exc:
            self.repository.discard(handle)
            return self._failure(trigger, exc.kind, str(exc))

        self._set_state(RunState.RECORDING)
        snapshot_id = handle.snapshot_id
        try:
            await self.store.insert_snapshot(self._snapshot_row(snapshot_id, sidecar))
        except Conflict:
            logger.warning("Snapshot id %s already recorded, allocating a new id", snapshot_id)
            try:
                new_id = await self.allocate_id(sidecar.created_at, also_taken=[snapshot_id])
                self.repository.rename_committed(snapshot_id, new_id)
                snapshot_id = new_id
                await self.store.insert_snapshot(self._snapshot_row(snapshot_id, sidecar))
            except BackupError as exc:
                return self._failure(trigger, MetadataFailure.kind, str(exc))
        except MetadataFailure as exc:
            logger.warning("Retrying snapshot insert for %s after: %s", snapshot_id, exc)
            try:
                await self.store.insert_snapshot(self._snapshot_row(snapshot_id, sidecar))
            except BackupError as retry_exc:
                return self._failure(trigger, MetadataFailure.kind, str(retry_exc))

        detail = self._advance_pointer(snapshot_id)
        return TickResult(
            trigger=trigger,
            outcome=RunOutcome.CREATED,
            snapshot_id=snapshot_id,
            content_hash=sidecar.content_hash,
            detail=detail,
        )

    def _snapshot_row(self, snapshot_id: str, sidecar: SnapshotSidecar) -> Snapshot:
        return Snapshot(
            id=snapshot_id,
            content_hash=sidecar.content_hash,
            created_at=as_utc(sidecar.created_at),
            size_bytes=sidecar.size_bytes,
            stats_json=sidecar.stats.to_json() if sidecar.stats is not None else None,
            storage_path=self.repository.storage_path(snapshot_id),
            source_revision=sidecar.source_revision,
            sync_duration_ms=sidecar.sync_duration_ms,
        )

    def _advance_pointer(self, snapshot_id: str) -> str | None:
        """Point at a freshly inserted snapshot if policy says so.

        Returns a detail message when the pointer could not be moved; the
        snapshot itself is already durable by then.
        """
        try:
            if not self.policy.pointer_follows_latest:
                try:
                    current = self.pointer.read()
                except Corrupt as exc:
                    logger.warning("Replacing unreadable active pointer: %s", exc)
                    current = None
                if current is not None:
                    return None
            self.pointer.write(snapshot_id, self.repository.storage_path(snapshot_id))
        except StorageFailure as exc:
            logger.error("Snapshot %s created but pointer update failed: %s", snapshot_id, exc)
            return f"pointer update failed: {exc}"
        self.pointer_issue = None
        return None

    async def allocate_id(
        self, created_at: datetime, also_taken: Iterable[str] = ()
    ) -> str:
        """Return an unused snapshot id for ``created_at``.

        Probes both the store and the backups directory; collisions get a
        ``-N`` suffix.
        """
        taken = await self.store.snapshot_ids()
        taken.update(self.repository.list_committed())
        taken.update(also_taken)
        base = format_snapshot_timestamp(created_at)
        candidate = base
        counter = 0
        while candidate in taken:
            counter += 1
            candidate = f"{base}-{counter}"
        return candidate

    def _failure(self, trigger: str, reason: str, detail: str) -> TickResult:
        return TickResult(
            trigger=trigger, outcome=RunOutcome.FAILED, reason=reason, detail=detail
        )

    async def _record_run(self, result: TickResult, started_at: datetime) -> None:
        record = RunRecord(
            trigger=str(result.trigger),
            outcome=str(result.outcome),
            snapshot_id=result.snapshot_id,
            reason=str(result.reason) if result.reason is not None else None,
            detail=result.detail,
            content_hash=result.content_hash,
            started_at=started_at,
            finished_at=self._clock(),
        )
        try:
            await self.store.insert_run(record)
        except MetadataFailure as exc:
            logger.error("Failed to record %s run: %s", result.outcome, exc)
            return
        result.run_id = record.id

    # -- pruning -----------------------------------------------------------

    async def prune(self) -> PruneReport:
        """Delete snapshots past retention, oldest first.

        Keeps the newest ``retention_min_keep`` snapshots and the Active
        Pointer target regardless of age. Per-item failures are logged and
        reported, never raised.
        """
        report = PruneReport()
        if self.policy.retention_days <= 0:
            return report

        try:
            current = self.pointer.read()
        except BackupError as exc:
            logger.warning("Skipping pruning: active pointer unreadable: %s", exc)
            return report
        try:
            snapshots = await self.store.list_snapshots()
        except MetadataFailure as exc:
            logger.warning("Skipping pruning: %s", exc)
            return report

        horizon = self._clock() - timedelta(days=self.policy.retention_days)
        protected = current.snapshot_id if current is not None else None
        candidates = [
            s
            for s in snapshots[self.policy.retention_min_keep :]
            if as_utc(s.created_at) < horizon and s.id != protected
        ]
        candidates.sort(key=lambda s: (as_utc(s.created_at), snapshot_sort_key(s.id)))

        for snapshot in candidates:
            try:
                await self.store.delete_snapshot(snapshot.id)
                self.repository.delete(snapshot.id)
            except BackupError as exc:
                logger.warning("Failed to prune snapshot %s: %s", snapshot.id, exc)
                report.failed.append(snapshot.id)
                continue
            self.corrupt_snapshots.discard(snapshot.id)
            report.deleted.append(snapshot.id)
            logger.info("Pruned snapshot %s", snapshot.id)
        return report

    # -- rollback ----------------------------------------------------------

    async def request_rollback(self, snapshot_id: str) -> RollbackResult:
        """Repoint the Active Pointer at ``snapshot_id``.

        Waits behind an in-flight tick of this process; fails with ``LockHeld``
        if another process holds the lock. Every attempt is recorded as a
        Rollback Event, and failures are re-raised after recording.
        """
        requested_at = self._clock()
        try:
            await self.run_lock.acquire()
        except (LockHeld, StorageFailure) as exc:
            await self._record_rollback(snapshot_id, None, requested_at, exc.kind, str(exc))
            raise

        previous_id: str | None = None
        try:
            try:
                row = await self.store.get_snapshot(snapshot_id)
                if row is None:
                    raise NotFound(f"Snapshot {snapshot_id} not found")
                try:
                    self.repository.verify(snapshot_id)
                except Corrupt:
                    self.corrupt_snapshots.add(snapshot_id)
                    raise
                previous_id = self._current_pointer_id()
                self.pointer.write(snapshot_id, row.storage_path)
            except BackupError as exc:
                await self._record_rollback(
                    snapshot_id, previous_id, requested_at, exc.kind, str(exc)
                )
                logger.warning("Rollback to %s failed: %s", snapshot_id, exc)
                raise

            self.pointer_issue = None
            event = await self._record_rollback(
                snapshot_id, previous_id, requested_at, "success", None
            )
        finally:
            self.run_lock.release()

        logger.info("Rolled back active pointer from %s to %s", previous_id, snapshot_id)
        return RollbackResult(
            target_snapshot_id=snapshot_id,
            previous_snapshot_id=previous_id,
            result="success",
            event_id=event.id if event is not None else None,
        )

    def _current_pointer_id(self) -> str | None:
        try:
            current = self.pointer.read()
        except Corrupt as exc:
            logger.warning("Active pointer unreadable before rollback: %s", exc)
            return None
        return current.snapshot_id if current is not None else None

    async def _record_rollback(
        self,
        target: str,
        previous: str | None,
        requested_at: datetime,
        result: str,
        detail: str | None,
    ) -> RollbackEvent | None:
        event = RollbackEvent(
            target_snapshot_id=target,
            previous_snapshot_id=previous,
            requested_at=requested_at,
            finished_at=self._clock(),
            result=result,
            detail=detail,
        )
        try:
            return await self.store.insert_rollback_event(event)
        except MetadataFailure as exc:
            logger.error("Failed to record rollback event for %s: %s", target, exc)
            return None

    # -- recovery ----------------------------------------------------------

    async def startup_recovery(self) -> RecoveryReport:
        """Clean up after a crash and refresh the health signal.

        Removes staging directories and committed directories without a row,
        checks that the Active Pointer resolves, and verifies every row's
        payload. Rows that fail verification are reported, not deleted.
        """
        report = RecoveryReport()
        if not await self.run_lock.try_acquire():
            logger.warning("Skipping startup recovery: run lock is held")
            report.skipped_lock_held = True
            return report
        try:
            report.staging_removed = self.repository.sweep_staging()
            known = await self.store.snapshot_ids()
            committed = self.repository.list_committed()
            if not known and committed:
                logger.warning(
                    "Metadata store has no snapshots but %d snapshot directories exist; "
                    "leaving them in place. Run 'rebuild-metadata' to restore the index.",
                    len(committed),
                )
            else:
                report.orphans_removed = self.repository.sweep_orphans(known)

            self.corrupt_snapshots.clear()
            for snapshot_id in sorted(known, key=snapshot_sort_key):
                try:
                    self.repository.verify(snapshot_id)
                except Corrupt as exc:
                    logger.error("Snapshot %s failed verification: %s", snapshot_id, exc)
                    self.corrupt_snapshots.add(snapshot_id)
            report.corrupt = sorted(self.corrupt_snapshots)
            report.pointer_issue = await self._check_pointer(known)
        finally:
            self.run_lock.release()
        return report

    async def _check_pointer(self, known: set[str]) -> str | None:
        try:
            current = self.pointer.read()
        except BackupError as exc:
            self.pointer_issue = f"Active pointer unreadable: {exc}"
        else:
            if current is None:
                self.pointer_issue = None
                latest = await self.store.latest_snapshot()
                if latest is not None and latest.id not in self.corrupt_snapshots:
                    logger.info("Active pointer unset, pointing at latest snapshot %s", latest.id)
                    try:
                        self.pointer.write(latest.id, latest.storage_path)
                    except StorageFailure as exc:
                        self.pointer_issue = f"Active pointer could not be set: {exc}"
            elif current.snapshot_id not in known:
                self.pointer_issue = (
                    f"Active pointer references unknown snapshot {current.snapshot_id}"
                )
            elif current.snapshot_id in self.corrupt_snapshots:
                self.pointer_issue = (
                    f"Active pointer references corrupt snapshot {current.snapshot_id}"
                )
            else:
                self.pointer_issue = None
        if self.pointer_issue:
            logger.error("%s", self.pointer_issue)
        return self.pointer_issue

    async def rebuild_metadata_from_disk(self) -> RebuildReport:
        """Re-insert rows for committed directories whose row is missing.

        Snapshot directories are the durable source of truth; their sidecars
        carry everything a row needs.
        """
        report = RebuildReport()
        await self.run_lock.acquire()
        try:
            known = await self.store.snapshot_ids()
            for snapshot_id in self.repository.list_committed():
                if snapshot_id in known:
                    report.already_known += 1
                    continue
                try:
                    self.repository.verify(snapshot_id)
                    sidecar = self.repository.read_sidecar(snapshot_id)
                    await self.store.insert_snapshot(self._snapshot_row(snapshot_id, sidecar))
                except Conflict:
                    report.already_known += 1
                    continue
                except (Corrupt, MetadataFailure) as exc:
                    logger.warning("Cannot rebuild row for %s: %s", snapshot_id, exc)
                    report.failed.append(snapshot_id)
                    continue
                self.corrupt_snapshots.discard(snapshot_id)
                report.inserted.append(snapshot_id)
                logger.info("Rebuilt metadata row for snapshot %s", snapshot_id)
        finally:
            self.run_lock.release()
        return report


async def _run_to_completion(aw: Awaitable[T]) -> tuple[T, bool]:
    """Await ``aw`` even if the caller is cancelled meanwhile.

    Returns the result and whether a cancellation was deferred; the caller
    re-raises ``CancelledError`` once it has recorded the outcome.
    """
    task = asyncio.ensure_future(aw)
    cancelled = False
    while True:
        try:
            return await asyncio.shield(task), cancelled
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
