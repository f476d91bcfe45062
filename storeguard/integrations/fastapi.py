# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard FastAPI Integration - Plugin for FastAPI applications.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints for backups and restores
- Scheduled backups
- Health checks
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC

import aiosqlite
import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from storeguard.config import BackupCategory, StoreGuardConfig
from storeguard.core import (
    EngineState,
    create_backup,
    create_emergency_backup,
    delete_backup,
    discard_restore,
    get_backup_details,
    get_backup_stats,
    get_metrics,
    initialize_engine,
    list_backups,
    promote_restore,
    restore_backup,
    shutdown_engine,
)
from storeguard.exceptions import (
    BackupInProgress,
    ConfigurationError,
    CorruptBackup,
    NotFound,
    RestoreVerificationFailed,
    StoreGuardError,
)
from storeguard.vault import list_operations

logger = structlog.get_logger()

DEFAULT_PREFIX = "/admin/backups"

# Security
security = HTTPBearer(auto_error=False)


class BackupRequest(BaseModel):
    """Body of a manual backup request."""

    category: BackupCategory = BackupCategory.MANUAL
    label: str | None = None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the STOREGUARD_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("STOREGUARD_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="STOREGUARD_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: StoreGuardError) -> HTTPException:
    """Map an engine error to an HTTP error response."""
    if isinstance(error, NotFound):
        status_code = 404
    elif isinstance(error, BackupInProgress):
        status_code = 409
    elif isinstance(error, (CorruptBackup, RestoreVerificationFailed)):
        status_code = 422
    elif isinstance(error, ConfigurationError):
        status_code = 400
    else:
        status_code = 500

    return HTTPException(
        status_code=status_code,
        detail={
            "error": type(error).__name__,
            "message": error.message,
            **jsonable_encoder(error.details),
        },
    )


def register_storeguard_routes(
    app: FastAPI,
    config: StoreGuardConfig,
    state: EngineState,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Register StoreGuard admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: StoreGuard configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/backups)
    """

    @app.post(prefix, dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: BackupRequest | None = None) -> dict:
        """
        Take a backup now.

        Returns the summary of the new backup.
        """
        request = request or BackupRequest()
        try:
            summary = await create_backup(config, state, request.category, request.label)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return summary.to_dict()

    @app.post(f"{prefix}/emergency", dependencies=[Depends(verify_api_key)])
    async def trigger_emergency_backup(label: str | None = None) -> dict:
        """Take an emergency backup, exempt from retention."""
        try:
            summary = await create_emergency_backup(config, state, label)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return summary.to_dict()

    @app.get(prefix, dependencies=[Depends(verify_api_key)])
    async def list_all_backups(category: BackupCategory | None = None) -> list:
        """
        List backups, newest first.

        Args:
            category: Only list backups of this category
        """
        return [summary.to_dict() for summary in await list_backups(state, category)]

    @app.get(f"{prefix}/stats", dependencies=[Depends(verify_api_key)])
    async def get_stats() -> dict:
        """Aggregate counts and sizes over all backups."""
        stats = await get_backup_stats(state)
        return stats.to_dict()

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get scheduler status and engine metrics.
        """
        metrics = asdict(await get_metrics(state))
        metrics["last_backup_at"] = (
            metrics["last_backup_at"].isoformat() if metrics["last_backup_at"] else None
        )
        return {
            "scheduler": state["scheduler"].status(),
            "running_backups": [
                category.value
                for category in BackupCategory
                if state["writer"].is_running(category)
            ],
            "metrics": metrics,
            "started_at": state["started_at"].isoformat(),
            "live_root": str(config.live_root),
            "protected_items": [item.name for item in config.protected_items],
        }

    @app.get(f"{prefix}/operations", dependencies=[Depends(verify_api_key)])
    async def list_journal_operations(
        limit: int = 50,
        offset: int = 0,
        kind: str | None = None,
        backup_id: str | None = None,
    ) -> list:
        """
        List journal records with pagination.

        Args:
            limit: Maximum number of records to return
            offset: Number of records to skip
            kind: Filter by kind (backup, restore, promote, delete, retention)
            backup_id: Filter by backup
        """
        if state["journal_db_path"] is None:
            return []
        async with aiosqlite.connect(state["journal_db_path"]) as db:
            return await list_operations(db, limit, offset, kind, backup_id)

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the live root, backup root and journal are reachable.
        """
        live_ok = config.live_root.is_dir()
        backups_ok = config.backup_root.is_dir()
        journal_ok = (
            state["journal_db_path"].exists() if state["journal_db_path"] else None
        )

        status = "healthy"
        if not live_ok or not backups_ok or journal_ok is False:
            status = "degraded"
        if not live_ok and not backups_ok:
            status = "unhealthy"

        return {
            "status": status,
            "live_root_accessible": live_ok,
            "backup_root_accessible": backups_ok,
            "journal_accessible": journal_ok,
            "backup_bytes": await state["backend"].size() if backups_ok else 0,
            "scheduler_running": state["scheduler"].scheduler.running,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.post(
        f"{prefix}/restores/{{restore_id}}/promote",
        dependencies=[Depends(verify_api_key)],
    )
    async def promote_staged_restore(restore_id: str) -> dict:
        """Apply a staged restore to the live data."""
        try:
            result = await promote_restore(config, state, restore_id)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.delete(f"{prefix}/restores/{{restore_id}}", dependencies=[Depends(verify_api_key)])
    async def discard_staged_restore(restore_id: str) -> dict:
        """Drop a staged restore without applying it."""
        try:
            await discard_restore(state, restore_id)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return {"restore_id": restore_id, "discarded": True}

    @app.get(f"{prefix}/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def get_backup(backup_id: str) -> dict:
        """Get one backup's summary and manifest."""
        try:
            return await get_backup_details(state, backup_id)
        except StoreGuardError as e:
            raise _http_error(e) from e

    @app.post(f"{prefix}/{{backup_id}}/restore", dependencies=[Depends(verify_api_key)])
    async def restore_to_staging(backup_id: str) -> dict:
        """
        Restore a backup into staging.

        The live data is untouched until the returned restore_id is promoted.
        """
        try:
            result = await restore_backup(config, state, backup_id)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.delete(f"{prefix}/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def remove_backup(backup_id: str) -> dict:
        """Delete one backup."""
        try:
            await delete_backup(state, backup_id)
        except StoreGuardError as e:
            raise _http_error(e) from e
        return {"backup_id": backup_id, "deleted": True}


@asynccontextmanager
async def storeguard_lifespan(
    app: FastAPI,
    config: StoreGuardConfig,
    prefix: str = DEFAULT_PREFIX,
    start_scheduler: bool = True,
):
    """
    Lifespan context manager for FastAPI.

    Use it directly:

        app = FastAPI(lifespan=lambda app: storeguard_lifespan(app, config))

    Args:
        app: FastAPI application
        config: StoreGuard configuration
        prefix: URL prefix for admin endpoints
        start_scheduler: Start periodic backups on startup
    """
    logger.info("storeguard_lifespan_starting", live_root=str(config.live_root))

    state = await initialize_engine(config, start_scheduler=start_scheduler)
    app.state.storeguard_state = state
    app.state.storeguard_config = config

    register_storeguard_routes(app, config, state, prefix)

    logger.info("storeguard_lifespan_started")

    try:
        yield
    finally:
        logger.info("storeguard_lifespan_stopping")
        await shutdown_engine(state)
        app.state.storeguard_state = None
        logger.info("storeguard_lifespan_stopped")


def setup_storeguard_plugin(
    app: FastAPI,
    config: StoreGuardConfig,
    prefix: str = DEFAULT_PREFIX,
    start_scheduler: bool = True,
) -> None:
    """
    Set up StoreGuard plugin with lifespan management.

    This is the main entry point for integrating StoreGuard with a FastAPI
    app. The app's existing lifespan keeps running inside StoreGuard's, so
    the engine is ready before application startup code runs.

    Args:
        app: FastAPI application
        config: StoreGuard configuration
        prefix: URL prefix for admin endpoints
        start_scheduler: Start periodic backups on startup
    """
    app.state.storeguard_config = config
    app.state.storeguard_state = None

    app_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with storeguard_lifespan(app, config, prefix, start_scheduler):
            async with app_lifespan(app) as app_state:
                yield app_state

    app.router.lifespan_context = lifespan


def get_storeguard_state(app: FastAPI) -> EngineState:
    """
    Get StoreGuard state from a FastAPI app.

    Useful for accessing state in custom endpoints.

    Raises:
        RuntimeError: If StoreGuard not initialized
    """
    state = getattr(app.state, "storeguard_state", None)
    if not state:
        raise RuntimeError("StoreGuard not initialized. Call setup_storeguard_plugin first.")
    return state


def get_storeguard_config(app: FastAPI) -> StoreGuardConfig:
    """
    Get StoreGuard config from a FastAPI app.

    Raises:
        RuntimeError: If StoreGuard not initialized
    """
    config = getattr(app.state, "storeguard_config", None)
    if not config:
        raise RuntimeError("StoreGuard not initialized. Call setup_storeguard_plugin first.")
    return config
