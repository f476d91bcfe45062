# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Core - Engine facade for backup and restore operations.

This module wires the components (storage backend, catalog, writer,
validator, retention, restore engine, scheduler, journal) into one
explicit EngineState and exposes the operations callers use. There is
no module-level state: every function takes the state it works on.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, TypedDict

import aiosqlite
import structlog

from storeguard.backup.catalog import BackupCatalog, BackupStats, BackupSummary
from storeguard.backup.manifest import ManifestBuilder
from storeguard.backup.restore import PromoteResult, RestoreEngine, RestoreResult
from storeguard.backup.retention import RetentionManager, RetentionResult
from storeguard.backup.validator import IntegrityValidator
from storeguard.backup.writer import BackupWriter
from storeguard.config import BackupCategory, StoreGuardConfig
from storeguard.exceptions import JournalError, NotFound, RestoreFailed, StoreGuardError
from storeguard.scheduler import BackupScheduler
from storeguard.storage.base import StorageBackend
from storeguard.storage.local import LocalStorageBackend
from storeguard.vault.checksum import ChecksumService
from storeguard.vault.compressor import get_compression_stats
from storeguard.vault.journal import (
    KIND_BACKUP,
    KIND_DELETE,
    KIND_PROMOTE,
    KIND_RESTORE,
    KIND_RETENTION,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    get_journal_stats,
    init_journal_db,
    journal_path,
    record_operation,
)

logger = structlog.get_logger()

DEFAULT_SENTINEL = "colleges.json"


@dataclass
class EngineMetrics:
    """Metrics for engine operations."""

    total_backups: int
    failed_backups: int
    total_restores: int
    total_promotions: int
    total_deletions: int
    last_backup_at: datetime | None
    last_backup_id: str | None
    backup_count: int
    stored_bytes: int
    original_bytes: int
    avg_compression_ratio: float
    pending_restores: int
    last_error: str | None


class EngineState(TypedDict):
    """Runtime state for the backup engine."""

    backend: StorageBackend
    catalog: BackupCatalog
    validator: IntegrityValidator
    retention: RetentionManager
    writer: BackupWriter
    restore_engine: RestoreEngine
    scheduler: BackupScheduler
    journal_db_path: Path | None
    pending_restores: Dict[str, RestoreResult]
    started_at: datetime
    last_backup_at: datetime | None
    last_backup_id: str | None
    total_backups: int
    failed_backups: int
    total_restores: int
    total_promotions: int
    total_deletions: int
    last_error: str | None


async def initialize_engine(
    config: StoreGuardConfig,
    backend: StorageBackend | None = None,
    start_scheduler: bool = False,
) -> EngineState:
    """
    Initialize runtime state for the engine.

    Creates the backup root, initializes the journal, and removes
    leftovers of runs that died mid-way.

    Args:
        config: StoreGuard configuration
        backend: Storage for backup artifacts (default: local disk at
            config.backup_root)
        start_scheduler: Start periodic backups right away

    Returns:
        Initialized EngineState dictionary
    """
    config.backup_root.mkdir(parents=True, exist_ok=True)
    backend = backend or LocalStorageBackend(config.backup_root)

    journal_db_path = None
    if config.journal_enabled:
        journal_db_path = journal_path(config.backup_root)
        await init_journal_db(journal_db_path)

    checksum = ChecksumService()
    root_lock = asyncio.Lock()
    catalog = BackupCatalog(backend)
    validator = IntegrityValidator(backend, checksum)
    retention = RetentionManager(backend, catalog, config.retention, root_lock)
    writer = BackupWriter(
        config,
        backend,
        ManifestBuilder(checksum),
        validator,
        retention,
    )
    restore_engine = RestoreEngine(config, backend, catalog, validator, root_lock)

    state = EngineState(
        backend=backend,
        catalog=catalog,
        validator=validator,
        retention=retention,
        writer=writer,
        restore_engine=restore_engine,
        scheduler=None,  # Set below, it needs the state
        journal_db_path=journal_db_path,
        pending_restores={},
        started_at=datetime.now(UTC),
        last_backup_at=None,
        last_backup_id=None,
        total_backups=0,
        failed_backups=0,
        total_restores=0,
        total_promotions=0,
        total_deletions=0,
        last_error=None,
    )

    async def scheduled_backup(category: BackupCategory, label: str | None) -> BackupSummary:
        return await create_backup(config, state, category, label)

    state["scheduler"] = BackupScheduler(catalog, scheduled_backup, config.schedule_hours)

    await retention.sweep_incomplete()

    if start_scheduler:
        await state["scheduler"].start()

    logger.info(
        "engine_initialized",
        live_root=str(config.live_root),
        backend=repr(backend),
        items=len(config.protected_items),
        journal=str(journal_db_path) if journal_db_path else None,
    )

    return state


async def create_backup(
    config: StoreGuardConfig,
    state: EngineState,
    category: BackupCategory,
    label: str | None = None,
) -> BackupSummary:
    """
    Create one backup of the protected items.

    Args:
        config: StoreGuard configuration
        state: Runtime state
        category: Retention category
        label: Optional human label

    Returns:
        BackupSummary of the new backup

    Raises:
        BackupInProgress: A backup of this category is already running
        BackupFailed: The run failed and left nothing behind
    """
    category = BackupCategory(category)

    try:
        result = await state["writer"].run(category, label)
    except StoreGuardError as e:
        state["failed_backups"] += 1
        state["last_error"] = str(e)
        await _journal(
            state,
            KIND_BACKUP,
            STATUS_FAILED,
            backup_id=e.details.get("backup_id"),
            category=category.value,
            details={"error": str(e), "label": label},
        )
        raise

    state["total_backups"] += 1
    state["last_backup_at"] = result.manifest.timestamp
    state["last_backup_id"] = result.backup_id

    details = {
        "label": label,
        "files": result.manifest.total_files,
        "size": result.manifest.total_size,
        "stored_size": result.manifest.total_stored_size,
        "missing": sorted(result.manifest.missing),
        "duration_seconds": round(result.duration_seconds, 3),
    }
    if result.retention is not None:
        details["retention"] = result.retention.to_dict()

    await _journal(
        state,
        KIND_BACKUP,
        STATUS_SUCCEEDED,
        backup_id=result.backup_id,
        category=category.value,
        details=details,
    )

    if result.retention is not None and (result.retention.removed or result.retention.failed):
        state["total_deletions"] += len(result.retention.removed)
        await _journal_retention(state, result.retention)

    return result.summary


async def create_emergency_backup(
    config: StoreGuardConfig,
    state: EngineState,
    label: str | None = None,
) -> BackupSummary:
    """Take an out-of-schedule backup kept in the emergency category."""
    logger.warning("emergency_backup_requested", label=label)
    return await create_backup(config, state, BackupCategory.EMERGENCY, label or "emergency")


async def list_backups(
    state: EngineState,
    category: BackupCategory | None = None,
) -> List[BackupSummary]:
    return await state["catalog"].list(category)


async def get_backup_stats(state: EngineState) -> BackupStats:
    return await state["catalog"].stats()


async def get_backup_details(state: EngineState, backup_id: str) -> dict:
    """
    Get one backup's summary, manifest, and compression numbers.

    Raises:
        NotFound: If no valid backup has this identifier
    """
    summary, manifest = await state["catalog"].get(backup_id)
    return {
        **summary.to_dict(),
        "manifest": manifest.to_dict(),
        "compression_stats": get_compression_stats(
            manifest.total_size, manifest.total_stored_size
        ),
    }


async def restore_backup(
    config: StoreGuardConfig,
    state: EngineState,
    backup_id: str,
    staging_root: Path | None = None,
) -> RestoreResult:
    """
    Restore a backup into a verified staging directory.

    The live data is not touched; call promote_restore() to apply it.

    Raises:
        NotFound, CorruptBackup, RestoreVerificationFailed, RestoreFailed
    """
    try:
        result = await state["restore_engine"].restore(backup_id, staging_root)
    except StoreGuardError as e:
        state["last_error"] = str(e)
        await _journal(
            state,
            KIND_RESTORE,
            STATUS_FAILED,
            backup_id=backup_id,
            details={"error": str(e), "type": type(e).__name__},
        )
        raise

    state["pending_restores"][result.restore_id] = result
    state["total_restores"] += 1

    await _journal(
        state,
        KIND_RESTORE,
        STATUS_SUCCEEDED,
        backup_id=backup_id,
        category=result.manifest.category.value,
        details=result.to_dict(),
    )

    return result


async def promote_restore(
    config: StoreGuardConfig,
    state: EngineState,
    handle: RestoreResult | str,
) -> PromoteResult:
    """
    Apply a staged restore to the live data.

    Args:
        config: StoreGuard configuration
        state: Runtime state
        handle: RestoreResult from restore_backup(), or its restore_id

    Raises:
        NotFound: Unknown restore_id
        RestoreVerificationFailed: Staging changed since it was verified
        RestoreFailed: Promotion failed
    """
    handle = _pending_restore(state, handle)

    try:
        result = await state["restore_engine"].promote(handle, config.live_root)
    except StoreGuardError as e:
        state["last_error"] = str(e)
        await _journal(
            state,
            KIND_PROMOTE,
            STATUS_FAILED,
            backup_id=handle.backup_id,
            details={"restore_id": handle.restore_id, "error": str(e)},
        )
        raise

    state["pending_restores"].pop(handle.restore_id, None)
    state["total_promotions"] += 1

    await _journal(
        state,
        KIND_PROMOTE,
        STATUS_SUCCEEDED,
        backup_id=handle.backup_id,
        category=handle.manifest.category.value,
        details=result.to_dict(),
    )

    return result


async def discard_restore(state: EngineState, handle: RestoreResult | str) -> None:
    """Drop a staged restore without applying it."""
    handle = _pending_restore(state, handle)
    await state["restore_engine"].discard(handle)
    state["pending_restores"].pop(handle.restore_id, None)


async def delete_backup(state: EngineState, backup_id: str) -> None:
    """
    Delete one backup.

    Raises:
        NotFound: If no valid backup has this identifier
    """
    category = await state["retention"].delete(backup_id)
    state["total_deletions"] += 1
    await _journal(
        state,
        KIND_DELETE,
        STATUS_SUCCEEDED,
        backup_id=backup_id,
        category=category.value,
    )


async def enforce_retention(
    state: EngineState,
    category: BackupCategory,
    include_exempt: bool = False,
) -> RetentionResult:
    """Run a retention pass outside of a backup run."""
    result = await state["retention"].enforce(category, include_exempt)
    state["total_deletions"] += len(result.removed)
    await _journal_retention(state, result)
    return result


async def recover_if_missing(
    config: StoreGuardConfig,
    state: EngineState,
    sentinel: str = DEFAULT_SENTINEL,
) -> PromoteResult | None:
    """
    Restore the newest valid backup if the live data looks wiped.

    The sentinel item (a protected file or directory name) is checked in
    the live root. If it is absent or empty, the newest backup that
    contains it is restored and promoted. Backups that fail validation
    or cannot be staged are skipped in favour of the next older one.

    Returns:
        PromoteResult, or None if no recovery was needed

    Raises:
        NotFound: If no valid backup contains the sentinel
    """
    if not _sentinel_missing(config.live_root, sentinel):
        logger.info("recovery_not_needed", sentinel=sentinel)
        return None

    logger.warning("live_data_missing", sentinel=sentinel)

    for manifest in reversed(await state["catalog"].manifests()):
        if sentinel not in manifest.entries and sentinel not in manifest.directories:
            continue
        try:
            handle = await restore_backup(config, state, manifest.backup_id)
        except RestoreFailed as e:
            logger.warning(
                "recovery_candidate_rejected",
                backup_id=manifest.backup_id,
                error=type(e).__name__,
            )
            continue
        result = await promote_restore(config, state, handle)
        logger.info("live_data_recovered", backup_id=manifest.backup_id, sentinel=sentinel)
        return result

    raise NotFound(
        f"No valid backup contains {sentinel}",
        details={"sentinel": sentinel},
    )


async def get_metrics(state: EngineState) -> EngineMetrics:
    """Get current engine metrics."""
    stats = await state["catalog"].stats()
    compression = get_compression_stats(stats.total_original_size, stats.total_size)

    return EngineMetrics(
        total_backups=state["total_backups"],
        failed_backups=state["failed_backups"],
        total_restores=state["total_restores"],
        total_promotions=state["total_promotions"],
        total_deletions=state["total_deletions"],
        last_backup_at=state["last_backup_at"],
        last_backup_id=state["last_backup_id"],
        backup_count=stats.count,
        stored_bytes=stats.total_size,
        original_bytes=stats.total_original_size,
        avg_compression_ratio=compression["compression_ratio"],
        pending_restores=len(state["pending_restores"]),
        last_error=state["last_error"],
    )


async def get_journal_summary(state: EngineState) -> dict | None:
    if state["journal_db_path"] is None:
        return None
    async with aiosqlite.connect(state["journal_db_path"]) as db:
        return await get_journal_stats(db)


async def shutdown_engine(state: EngineState) -> None:
    """Stop the scheduler and drop staged restores that were never promoted."""
    state["scheduler"].shutdown()

    for restore_id in list(state["pending_restores"]):
        try:
            await discard_restore(state, restore_id)
        except OSError as e:
            logger.warning("staging_cleanup_failed", restore_id=restore_id, error=str(e))

    logger.info("engine_shutdown_complete")


def _pending_restore(state: EngineState, handle: RestoreResult | str) -> RestoreResult:
    if isinstance(handle, RestoreResult):
        return handle
    pending = state["pending_restores"].get(handle)
    if pending is None:
        raise NotFound(
            f"Staged restore not found: {handle}",
            details={"restore_id": handle},
        )
    return pending


def _sentinel_missing(live_root: Path, sentinel: str) -> bool:
    path = Path(live_root) / sentinel
    if path.is_dir():
        return not any(path.iterdir())
    if not path.is_file():
        return True
    if path.stat().st_size == 0:
        return True
    if path.suffix == ".json":
        try:
            return json.loads(path.read_text(encoding="utf-8")) in ([], {}, None)
        except (UnicodeDecodeError, json.JSONDecodeError):
            # Present but unparseable; leave it for a human
            logger.warning("sentinel_unreadable", sentinel=sentinel)
            return False
    return False


async def _journal_retention(state: EngineState, result: RetentionResult) -> None:
    await _journal(
        state,
        KIND_RETENTION,
        STATUS_FAILED if result.failed else STATUS_SUCCEEDED,
        category=result.category.value,
        details=result.to_dict(),
    )


async def _journal(
    state: EngineState,
    kind: str,
    status: str,
    backup_id: str | None = None,
    category: str | None = None,
    details: Dict[str, Any] | None = None,
) -> None:
    if state["journal_db_path"] is None:
        return
    try:
        async with aiosqlite.connect(state["journal_db_path"]) as db:
            await record_operation(db, kind, status, backup_id, category, details)
    except (JournalError, aiosqlite.Error) as e:
        logger.error("journal_write_failed", kind=kind, backup_id=backup_id, error=str(e))
