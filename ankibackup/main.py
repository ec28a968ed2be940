"""FastAPI application and daemon entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from ankibackup.api.health import VERSION
from ankibackup.api.health import router as health_router
from ankibackup.api.runs import router as runs_router
from ankibackup.api.snapshots import router as snapshots_router
from ankibackup.config import Settings
from ankibackup.exceptions import (
    BackupError,
    Conflict,
    Corrupt,
    LockHeld,
    MetadataFailure,
    NotFound,
    StorageFailure,
)
from ankibackup.filesystem.pointer import ActivePointer
from ankibackup.filesystem.repository import BackupRepository
from ankibackup.filesystem.run_lock import RunLock
from ankibackup.services.metadata_store import create_metadata_store
from ankibackup.services.orchestrator import BackupOrchestrator, BackupPolicy, RunOutcome, Trigger
from ankibackup.services.rate_limit_service import InMemoryRateLimiter
from ankibackup.services.scheduler import BackupScheduler
from ankibackup.services.sync_service import build_refresher

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from ankibackup.services.metadata_store import SQLAlchemyMetadataStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def build_orchestrator(settings: Settings, store: SQLAlchemyMetadataStore) -> BackupOrchestrator:
    """Wire the orchestrator and its filesystem collaborators for ``settings``."""
    repository = BackupRepository(settings.root)
    repository.ensure_layout()
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    return BackupOrchestrator(
        store=store,
        repository=repository,
        pointer=ActivePointer(settings.pointer_path),
        run_lock=RunLock(settings.lock_path),
        refresher=build_refresher(settings),
        policy=BackupPolicy.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime()
    _configure_logging(settings.debug)
    logger.info("Starting anki backup daemon (root=%s)", settings.root)

    try:
        store = create_metadata_store(settings)
        await store.init_schema()
        app.state.store = store
    except Exception as exc:
        logger.critical(
            "Failed to initialize metadata store: %s. Check database URL and permissions.", exc
        )
        raise

    try:
        orchestrator = build_orchestrator(settings, store)
        app.state.orchestrator = orchestrator
        app.state.repository = orchestrator.repository
        app.state.pointer = orchestrator.pointer
    except Exception as exc:
        logger.critical("Failed to initialize data root at %s: %s.", settings.root, exc)
        raise

    try:
        report = await orchestrator.startup_recovery()
        logger.info(
            "Startup recovery: %d staging dirs removed, %d orphans removed, %d corrupt",
            len(report.staging_removed),
            len(report.orphans_removed),
            len(report.corrupt),
        )
    except Exception as exc:
        logger.critical("Startup recovery failed: %s.", exc)
        raise

    scheduler: BackupScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = BackupScheduler(
            orchestrator, store, interval_seconds=settings.schedule_interval_seconds
        )
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        try:
            await scheduler.stop()
        except Exception as exc:
            logger.error("Error during scheduler shutdown: %s", exc, exc_info=True)

    try:
        await store.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("Anki backup daemon stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="Anki Backup Daemon",
        description="Change-aware snapshots of an Anki collection",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    app.state.rate_limiter = InMemoryRateLimiter()

    app.include_router(health_router)
    app.include_router(snapshots_router)
    app.include_router(runs_router)

    # Global exception handlers: engine errors to HTTP responses

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc) or "Not found"})

    async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.info("%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    app.add_exception_handler(LockHeld, conflict_handler)
    app.add_exception_handler(Conflict, conflict_handler)

    @app.exception_handler(Corrupt)
    async def corrupt_handler(request: Request, exc: Corrupt) -> JSONResponse:
        logger.error("Corrupt in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Snapshot payload is corrupt"},
        )

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure) -> JSONResponse:
        logger.error(
            "StorageFailure in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(MetadataFailure)
    async def metadata_failure_handler(request: Request, exc: MetadataFailure) -> JSONResponse:
        logger.error("MetadataFailure in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Metadata store temporarily unavailable"},
        )

    @app.exception_handler(BackupError)
    async def backup_error_handler(request: Request, exc: BackupError) -> JSONResponse:
        logger.error(
            "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
        )
        return JSONResponse(status_code=500, content={"detail": "Backup operation failed"})

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


async def _run_once(settings: Settings) -> int:
    store = create_metadata_store(settings)
    try:
        await store.init_schema()
        orchestrator = build_orchestrator(settings, store)
        await orchestrator.startup_recovery()
        result = await orchestrator.run_tick(Trigger.MANUAL)
    finally:
        await store.dispose()
    print(
        json.dumps(
            {
                "outcome": str(result.outcome),
                "snapshot_id": result.snapshot_id,
                "reason": result.reason,
                "detail": result.detail,
                "pruned": result.pruned.deleted,
            }
        )
    )
    if result.outcome is RunOutcome.FAILED:
        return 1
    if result.outcome is RunOutcome.BUSY:
        return 2
    return 0


async def _rebuild_metadata(settings: Settings) -> int:
    store = create_metadata_store(settings)
    try:
        await store.init_schema()
        orchestrator = build_orchestrator(settings, store)
        report = await orchestrator.rebuild_metadata_from_disk()
    finally:
        await store.dispose()
    print(json.dumps(asdict(report)))
    return 1 if report.failed else 0


def cli_entry(argv: list[str] | None = None) -> None:
    """CLI entry point: serve (default), run-once, or rebuild-metadata."""
    parser = argparse.ArgumentParser(
        prog="anki-backup-daemon", description="Anki collection backup daemon"
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP API and the scheduler (default)")
    sub.add_parser("run-once", help="Run a single backup tick and exit")
    sub.add_parser("rebuild-metadata", help="Re-index snapshot directories from their sidecars")
    args = parser.parse_args(argv)

    settings: Settings = app.state.settings
    if args.command in ("run-once", "rebuild-metadata"):
        _configure_logging(settings.debug)
        try:
            settings.validate_runtime()
            if args.command == "run-once":
                code = asyncio.run(_run_once(settings))
            else:
                code = asyncio.run(_rebuild_metadata(settings))
        except (ValueError, BackupError) as exc:
            logger.error("%s", exc)
            code = 1
        sys.exit(code)

    import uvicorn

    uvicorn.run(
        "ankibackup.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
