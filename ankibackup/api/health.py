"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ankibackup.api.deps import get_orchestrator, get_scheduler, get_store
from ankibackup.exceptions import BackupError
from ankibackup.services.datetime_service import format_iso
from ankibackup.services.metadata_store import SQLAlchemyMetadataStore
from ankibackup.services.orchestrator import BackupOrchestrator
from ankibackup.services.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    scheduler: str
    next_run_at: str | None = None
    run_state: str
    active_snapshot_id: str | None = None
    pointer_issue: str | None = None
    corrupt_snapshots: list[str] = Field(default_factory=list)
    last_outcome: str | None = None


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    store: Annotated[SQLAlchemyMetadataStore, Depends(get_store)],
    orchestrator: Annotated[BackupOrchestrator, Depends(get_orchestrator)],
    scheduler: Annotated[BackupScheduler | None, Depends(get_scheduler)],
) -> HealthResponse:
    """Health check endpoint for monitoring.

    Corrupt snapshots and a dangling Active Pointer are standing conditions:
    they keep the status ``degraded`` until an operator resolves them.
    """
    db_status = "ok"
    try:
        await store.ping()
    except BackupError:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    active_id: str | None = None
    pointer_issue = orchestrator.pointer_issue
    try:
        current = orchestrator.pointer.read()
        active_id = current.snapshot_id if current is not None else None
    except BackupError as exc:
        pointer_issue = pointer_issue or f"Active pointer unreadable: {exc}"

    if scheduler is None:
        scheduler_status = "disabled"
    else:
        scheduler_status = "running" if scheduler.running else "stopped"

    corrupt = sorted(orchestrator.corrupt_snapshots)
    healthy = db_status == "ok" and not corrupt and pointer_issue is None
    last = orchestrator.last_result
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=VERSION,
        database=db_status,
        scheduler=scheduler_status,
        next_run_at=(
            format_iso(scheduler.next_run_at)
            if scheduler is not None and scheduler.next_run_at is not None
            else None
        ),
        run_state=str(orchestrator.state),
        active_snapshot_id=active_id,
        pointer_issue=pointer_issue,
        corrupt_snapshots=corrupt,
        last_outcome=str(last.outcome) if last is not None else None,
    )
