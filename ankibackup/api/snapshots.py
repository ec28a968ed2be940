"""Snapshot browsing, download and rollback endpoints.

Everything here except rollback is read-only and never takes the run lock.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from ankibackup.api.deps import (
    get_orchestrator,
    get_pointer,
    get_rate_limiter,
    get_repository,
    get_settings,
    get_store,
    require_api_token,
)
from ankibackup.config import Settings
from ankibackup.exceptions import BackupError, Corrupt, NotFound
from ankibackup.filesystem.pointer import ActivePointer
from ankibackup.filesystem.repository import BackupRepository
from ankibackup.models import Snapshot
from ankibackup.schemas.snapshot import (
    PointerResponse,
    RollbackResponse,
    SnapshotDetail,
    SnapshotListResponse,
    SnapshotStatsResponse,
    SnapshotSummary,
)
from ankibackup.services.datetime_service import format_iso
from ankibackup.services.metadata_store import SQLAlchemyMetadataStore
from ankibackup.services.orchestrator import BackupOrchestrator
from ankibackup.services.rate_limit_service import InMemoryRateLimiter
from ankibackup.services.stats_service import SnapshotStats

logger = logging.getLogger(__name__)

ROLLBACK_LIMIT_KEY = "rollback"

router = APIRouter(prefix="/api", tags=["snapshots"], dependencies=[Depends(require_api_token)])


def _active_id(pointer: ActivePointer) -> str | None:
    try:
        current = pointer.read()
    except BackupError as exc:
        logger.warning("Active pointer unreadable, listing without it: %s", exc)
        return None
    return current.snapshot_id if current is not None else None


def _summary(snapshot: Snapshot, active_id: str | None) -> SnapshotSummary:
    stats = SnapshotStats.from_json(snapshot.stats_json)
    return SnapshotSummary(
        id=snapshot.id,
        content_hash=snapshot.content_hash,
        created_at=format_iso(snapshot.created_at),
        size_bytes=snapshot.size_bytes,
        total_cards=stats.total_cards if stats is not None else None,
        total_notes=stats.total_notes if stats is not None else None,
        is_active=snapshot.id == active_id,
    )


async def _get_or_404(store: SQLAlchemyMetadataStore, snapshot_id: str) -> Snapshot:
    snapshot = await store.get_snapshot(snapshot_id)
    if snapshot is None:
        raise NotFound(f"Snapshot {snapshot_id} not found")
    return snapshot


@router.get("/snapshots", response_model=SnapshotListResponse)
async def list_snapshots(
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    pointer: Annotated[ActivePointer, Depends(get_pointer)],
) -> SnapshotListResponse:
    """List snapshots, newest first."""
    active_id = _active_id(pointer)
    snapshots = await store.list_snapshots()
    return SnapshotListResponse(
        snapshots=[_summary(s, active_id) for s in snapshots],
        active_snapshot_id=active_id,
    )


@router.get("/snapshots/{snapshot_id}", response_model=SnapshotDetail)
async def get_snapshot(
    snapshot_id: str,
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    pointer: Annotated[ActivePointer, Depends(get_pointer)],
    orchestrator: Annotated[BackupOrchestrator, Depends(get_orchestrator)],
) -> SnapshotDetail:
    snapshot = await _get_or_404(store, snapshot_id)
    stats = SnapshotStats.from_json(snapshot.stats_json)
    return SnapshotDetail(
        id=snapshot.id,
        content_hash=snapshot.content_hash,
        created_at=format_iso(snapshot.created_at),
        size_bytes=snapshot.size_bytes,
        storage_path=snapshot.storage_path,
        source_revision=snapshot.source_revision,
        sync_duration_ms=snapshot.sync_duration_ms,
        stats=SnapshotStatsResponse.model_validate(stats.to_dict()) if stats else None,
        is_active=snapshot.id == _active_id(pointer),
        is_corrupt=snapshot.id in orchestrator.corrupt_snapshots,
    )


@router.get("/snapshots/{snapshot_id}/download")
async def download_snapshot(
    snapshot_id: str,
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    repository: Annotated[BackupRepository, Depends(get_repository)],
    orchestrator: Annotated[BackupOrchestrator, Depends(get_orchestrator)],
) -> StreamingResponse:
    """Stream the collection payload of a snapshot."""
    await _get_or_404(store, snapshot_id)
    try:
        chunks = repository.read(snapshot_id)
    except (NotFound, Corrupt) as exc:
        orchestrator.corrupt_snapshots.add(snapshot_id)
        raise Corrupt(f"Snapshot {snapshot_id} payload is missing") from exc
    return StreamingResponse(
        chunks,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{snapshot_id}.anki2"'},
    )


@router.post("/snapshots/{snapshot_id}/rollback", response_model=RollbackResponse)
async def rollback_snapshot(
    snapshot_id: str,
    orchestrator: Annotated[BackupOrchestrator, Depends(get_orchestrator)],
    limiter: Annotated[InMemoryRateLimiter, Depends(get_rate_limiter)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RollbackResponse:
    """Make ``snapshot_id`` the active restore target.

    Only successful rollbacks count toward ``rollback_min_interval_seconds``;
    a request inside that interval is refused with 429 before it reaches the
    orchestrator, so it leaves no Rollback Event.
    """
    window = settings.rollback_min_interval_seconds
    limited, retry_after = limiter.is_limited(ROLLBACK_LIMIT_KEY, 1, window)
    if limited:
        logger.info("Rollback to %s refused, retry after %ds", snapshot_id, retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rollbacks are rate limited. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    result = await orchestrator.request_rollback(snapshot_id)
    limiter.record(ROLLBACK_LIMIT_KEY, window)
    return RollbackResponse(
        target_snapshot_id=result.target_snapshot_id,
        previous_snapshot_id=result.previous_snapshot_id,
        result=result.result,
        event_id=result.event_id,
    )


@router.get("/pointer", response_model=PointerResponse)
async def get_pointer_state(
    pointer: Annotated[ActivePointer, Depends(get_pointer)],
) -> PointerResponse:
    try:
        current = pointer.read()
    except BackupError as exc:
        logger.warning("Active pointer unreadable: %s", exc)
        return PointerResponse(issue=f"Active pointer unreadable: {exc}")
    if current is None:
        return PointerResponse()
    return PointerResponse(
        snapshot_id=current.snapshot_id,
        storage_path=current.storage_path,
        updated_at=format_iso(current.updated_at),
    )
