"""Rollback event model."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ankibackup.models.base import Base


class RollbackEvent(Base):
    """Audit entry for one rollback request (append-only)."""

    __tablename__ = "rollback_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_snapshot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_snapshot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    result: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
