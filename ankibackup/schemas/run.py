"""Run record schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RunRecordResponse(BaseModel):
    """One recorded tick."""

    id: int
    trigger: str
    outcome: str
    snapshot_id: str | None = None
    reason: str | None = None
    detail: str | None = None
    content_hash: str | None = None
    started_at: str
    finished_at: str


class TriggerRunResponse(BaseModel):
    """Result of a manually triggered tick."""

    outcome: str
    trigger: str
    snapshot_id: str | None = None
    reason: str | None = None
    detail: str | None = None
    run_id: int | None = None
    pruned: list[str] = Field(default_factory=list)
