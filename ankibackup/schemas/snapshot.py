"""Snapshot, pointer and rollback schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class DeckStatsResponse(BaseModel):
    deck_id: int
    deck_name: str
    card_count: int = Field(ge=0)


class SnapshotStatsResponse(BaseModel):
    """Advisory collection counts captured with a snapshot."""

    total_cards: int = Field(ge=0)
    total_notes: int = Field(ge=0)
    total_decks: int = Field(ge=0)
    total_revlog: int = Field(ge=0)
    deck_stats: list[DeckStatsResponse] = Field(default_factory=list)


class SnapshotSummary(BaseModel):
    """Snapshot list entry."""

    id: str
    content_hash: str
    created_at: str
    size_bytes: int
    total_cards: int | None = None
    total_notes: int | None = None
    is_active: bool = False


class SnapshotListResponse(BaseModel):
    snapshots: list[SnapshotSummary]
    active_snapshot_id: str | None = None


class SnapshotDetail(BaseModel):
    """Full snapshot metadata including per-deck stats."""

    id: str
    content_hash: str
    created_at: str
    size_bytes: int
    storage_path: str
    source_revision: str | None = None
    sync_duration_ms: int | None = None
    stats: SnapshotStatsResponse | None = None
    is_active: bool = False
    is_corrupt: bool = False


class PointerResponse(BaseModel):
    """Current Active Pointer; all fields null when unset."""

    snapshot_id: str | None = None
    storage_path: str | None = None
    updated_at: str | None = None
    issue: str | None = None


class RollbackResponse(BaseModel):
    target_snapshot_id: str
    previous_snapshot_id: str | None = None
    result: str
    event_id: int | None = None


class RollbackEventResponse(BaseModel):
    """Rollback audit entry."""

    id: int
    target_snapshot_id: str
    previous_snapshot_id: str | None = None
    requested_at: str
    finished_at: str
    result: str
    detail: str | None = None
