"""Run history, manual trigger and rollback history endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from ankibackup.api.deps import get_orchestrator, get_scheduler, get_store, require_api_token
from ankibackup.schemas.run import RunRecordResponse, TriggerRunResponse
from ankibackup.schemas.snapshot import RollbackEventResponse
from ankibackup.services.datetime_service import format_iso
from ankibackup.services.metadata_store import SQLAlchemyMetadataStore
from ankibackup.services.orchestrator import BackupOrchestrator, RunOutcome, Trigger
from ankibackup.services.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["runs"], dependencies=[Depends(require_api_token)])


@router.get("/runs", response_model=list[RunRecordResponse])
async def list_runs(
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[RunRecordResponse]:
    """Recent run records, newest first."""
    runs = await store.list_runs(limit=limit)
    return [
        RunRecordResponse(
            id=r.id,
            trigger=r.trigger,
            outcome=r.outcome,
            snapshot_id=r.snapshot_id,
            reason=r.reason,
            detail=r.detail,
            content_hash=r.content_hash,
            started_at=format_iso(r.started_at),
            finished_at=format_iso(r.finished_at),
        )
        for r in runs
    ]


@router.post("/runs", response_model=TriggerRunResponse)
async def trigger_run(
    orchestrator: Annotated[BackupOrchestrator, Depends(get_orchestrator)],
    scheduler: Annotated[BackupScheduler | None, Depends(get_scheduler)],
) -> TriggerRunResponse:
    """Run one tick now. Returns 409 if a tick or rollback is in progress."""
    if scheduler is not None:
        result = await scheduler.trigger_now()
    else:
        result = await orchestrator.run_tick(Trigger.MANUAL)
    if result.outcome is RunOutcome.BUSY:
        raise HTTPException(status_code=409, detail="A backup run is already in progress")
    return TriggerRunResponse(
        outcome=str(result.outcome),
        trigger=str(result.trigger),
        snapshot_id=result.snapshot_id,
        reason=str(result.reason) if result.reason is not None else None,
        detail=result.detail,
        run_id=result.run_id,
        pruned=result.pruned.deleted,
    )


@router.get("/rollbacks", response_model=list[RollbackEventResponse])
async def list_rollbacks(
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[RollbackEventResponse]:
    """Recent rollback events, newest first."""
    events = await store.list_rollback_events(limit=limit)
    return [
        RollbackEventResponse(
            id=e.id,
            target_snapshot_id=e.target_snapshot_id,
            previous_snapshot_id=e.previous_snapshot_id,
            requested_at=format_iso(e.requested_at),
            finished_at=format_iso(e.finished_at),
            result=e.result,
            detail=e.detail,
        )
        for e in events
    ]
