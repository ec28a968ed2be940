"""Shared API dependencies: app-state collaborators and the API token check."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ankibackup.config import Settings
from ankibackup.filesystem.pointer import ActivePointer
from ankibackup.filesystem.repository import BackupRepository
from ankibackup.services.metadata_store import SQLAlchemyMetadataStore
from ankibackup.services.orchestrator import BackupOrchestrator
from ankibackup.services.rate_limit_service import InMemoryRateLimiter
from ankibackup.services.scheduler import BackupScheduler

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_store(request: Request) -> SQLAlchemyMetadataStore:
    store: SQLAlchemyMetadataStore = request.app.state.store
    return store


def get_repository(request: Request) -> BackupRepository:
    repository: BackupRepository = request.app.state.repository
    return repository


def get_pointer(request: Request) -> ActivePointer:
    pointer: ActivePointer = request.app.state.pointer
    return pointer


def get_orchestrator(request: Request) -> BackupOrchestrator:
    orchestrator: BackupOrchestrator = request.app.state.orchestrator
    return orchestrator


def get_rate_limiter(request: Request) -> InMemoryRateLimiter:
    limiter: InMemoryRateLimiter = request.app.state.rate_limiter
    return limiter


def get_scheduler(request: Request) -> BackupScheduler | None:
    """Scheduler, or None when scheduling is disabled."""
    scheduler: BackupScheduler | None = getattr(request.app.state, "scheduler", None)
    return scheduler


async def require_api_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the static bearer token when one is configured. Raises 401 otherwise."""
    if not settings.api_token:
        return
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode("utf-8"), settings.api_token.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
