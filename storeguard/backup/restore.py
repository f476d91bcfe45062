# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Restore Engine - Verified, staged restores.

Restoring never writes into the live data directly. A restore:

1. Resolves the backup by identifier (invalid manifests count as absent)
2. Validates the stored backup against its manifest
3. Decompresses every entry into a fresh staging directory
4. Re-validates the staging directory

Only an explicit promote() copies staged data into the live root, and it
re-validates the staging directory first. Every item is copied beside its
live counterpart before any of them is swapped in, and a failed swap rolls
back the ones already applied.
"""

import asyncio
import os
import secrets
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Tuple

import aiofiles
import structlog
from ulid import ULID

from storeguard.backup.catalog import BackupCatalog, backup_prefix
from storeguard.backup.manifest import BackupManifest
from storeguard.backup.validator import IntegrityValidator
from storeguard.config import StoreGuardConfig, is_within
from storeguard.exceptions import (
    CorruptBackup,
    NotFound,
    ObjectNotFound,
    OperationTimeout,
    RestoreFailed,
    RestoreVerificationFailed,
    StoreGuardError,
)
from storeguard.storage.base import StorageBackend, join_key
from storeguard.vault.compressor import compressor_for_codec

logger = structlog.get_logger()


@dataclass
class RestoreResult:
    """
    A verified restore waiting in staging.

    This is also the handle passed to promote() or discard().
    """

    restore_id: str
    backup_id: str
    staging_path: Path
    manifest: BackupManifest
    restored_files: int
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "restore_id": self.restore_id,
            "backup_id": self.backup_id,
            "staging_path": str(self.staging_path),
            "restored_files": self.restored_files,
            "missing_items": sorted(self.manifest.missing),
            "duration_seconds": round(self.duration_seconds, 3),
        }


# Staged restores are handed back as handles
StagingHandle = RestoreResult


@dataclass
class PromoteResult:
    """Result of copying a staged restore into the live root."""

    restore_id: str
    backup_id: str
    promoted_items: List[str] = field(default_factory=list)
    skipped_items: List[str] = field(default_factory=list)
    promoted_files: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "restore_id": self.restore_id,
            "backup_id": self.backup_id,
            "promoted_items": list(self.promoted_items),
            "skipped_items": list(self.skipped_items),
            "promoted_files": self.promoted_files,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class RestoreEngine:
    """Restores backups into staging and promotes them into live data."""

    def __init__(
        self,
        config: StoreGuardConfig,
        backend: StorageBackend,
        catalog: BackupCatalog,
        validator: IntegrityValidator,
        root_lock: asyncio.Lock,
    ):
        self.config = config
        self.backend = backend
        self.catalog = catalog
        self.validator = validator
        self.root_lock = root_lock
        self._promote_lock = asyncio.Lock()

    async def restore(self, backup_id: str, staging_root: Path | None = None) -> RestoreResult:
        """
        Restore a backup into a fresh staging directory.

        Args:
            backup_id: Backup to restore
            staging_root: Parent of the staging directory
                (default: config.staging_root)

        Returns:
            RestoreResult describing the verified staging directory

        Raises:
            NotFound: Unknown backup or invalid manifest
            CorruptBackup: Stored backup failed validation
            RestoreVerificationFailed: Staged output failed validation
            RestoreFailed: Any other failure, including timeout
        """
        staging_root = Path(staging_root or self.config.staging_root)
        self._check_staging_root(staging_root)

        restore_id = str(ULID())
        start = time.monotonic()
        staging: Path | None = None

        async with self.root_lock:
            manifest = await self.catalog.find(backup_id)
            if manifest is None:
                raise NotFound(
                    f"Backup not found: {backup_id}",
                    details={"backup_id": backup_id},
                )

            logger.info("restore_started", backup_id=backup_id, restore_id=restore_id)

            budget = asyncio.timeout(self.config.operation_timeout_seconds)
            try:
                async with budget:
                    prefix = backup_prefix(manifest.category, backup_id)

                    # Step 1: Never restore from a damaged backup
                    report = await self.validator.validate(prefix, manifest)
                    if not report.valid:
                        raise CorruptBackup(
                            backup_id,
                            report.mismatches,
                            details={"reasons": report.reasons},
                        )

                    # Step 2: Decompress into staging
                    staging_root.mkdir(parents=True, exist_ok=True)
                    staging = staging_root / f"restore-{backup_id}-{secrets.token_hex(4)}"
                    staging.mkdir()
                    await self._unpack(prefix, manifest, staging)

                    # Step 3: Check what was staged
                    report = await self.validator.validate_directory(staging, manifest)
                    if not report.valid:
                        raise RestoreVerificationFailed(
                            backup_id,
                            report.mismatches,
                            details={"reasons": report.reasons},
                        )

            except (CorruptBackup, RestoreVerificationFailed) as e:
                await _remove_tree(staging)
                logger.error("restore_rejected", backup_id=backup_id, mismatches=e.mismatches)
                raise
            except asyncio.CancelledError:
                await _remove_tree(staging)
                logger.warning("restore_cancelled", backup_id=backup_id)
                raise
            except (StoreGuardError, OSError) as e:
                await _remove_tree(staging)
                # TimeoutError is an OSError; only the expired budget is a timeout
                if budget.expired():
                    logger.error("restore_timed_out", backup_id=backup_id)
                    timeout = OperationTimeout(
                        f"Restore exceeded {self.config.operation_timeout_seconds}s",
                        details={"backup_id": backup_id},
                    )
                    timeout.__cause__ = e
                    raise RestoreFailed(
                        "operation timed out",
                        details={"backup_id": backup_id},
                    ) from timeout
                logger.error("restore_failed", backup_id=backup_id, error=str(e))
                raise RestoreFailed(str(e), details={"backup_id": backup_id}) from e

        result = RestoreResult(
            restore_id=restore_id,
            backup_id=backup_id,
            staging_path=staging,
            manifest=manifest,
            restored_files=manifest.total_files,
            duration_seconds=time.monotonic() - start,
        )

        logger.info(
            "restore_staged",
            backup_id=backup_id,
            restore_id=restore_id,
            staging_path=str(staging),
            files=result.restored_files,
            duration=round(result.duration_seconds, 3),
        )

        return result

    async def promote(self, handle: RestoreResult, live_root: Path | None = None) -> PromoteResult:
        """
        Copy a verified staging directory into the live root.

        Items the backup recorded as missing are left untouched. A
        protected directory containing a missing file is updated file by
        file instead of being swapped, so the unreadable file survives.
        If any swap fails, the items already swapped are put back.

        Args:
            handle: Result of a previous restore()
            live_root: Destination (default: config.live_root)

        Returns:
            PromoteResult

        Raises:
            RestoreVerificationFailed: Staging changed since restore()
            RestoreFailed: Staging is gone or a write failed
        """
        live_root = Path(live_root or self.config.live_root)
        manifest = handle.manifest
        staging = handle.staging_path
        start = time.monotonic()

        async with self._promote_lock:
            if not staging.is_dir():
                raise RestoreFailed(
                    "staging directory no longer exists",
                    details={"restore_id": handle.restore_id, "staging_path": str(staging)},
                )

            report = await self.validator.validate_directory(staging, manifest)
            if not report.valid:
                raise RestoreVerificationFailed(
                    handle.backup_id,
                    report.mismatches,
                    details={"restore_id": handle.restore_id, "reasons": report.reasons},
                )

            result = PromoteResult(restore_id=handle.restore_id, backup_id=handle.backup_id)
            plan = _promotion_plan(staging, live_root, manifest, result)

            # Copy everything beside the live data first, then swap it all in
            swaps: List[PendingSwap] = []
            try:
                for source, target in plan:
                    swaps.append(await _prepare_swap(source, target))
                for swap in swaps:
                    swap.apply()

            except OSError as e:
                unrestored = _roll_back(swaps)
                await _cleanup_swaps(swap for swap in swaps if str(swap.target) not in unrestored)
                logger.error(
                    "promote_failed",
                    restore_id=handle.restore_id,
                    error=str(e),
                    rolled_back=not unrestored,
                    unrestored=unrestored,
                )
                raise RestoreFailed(
                    f"promotion failed: {e}",
                    details={
                        "restore_id": handle.restore_id,
                        "rolled_back": not unrestored,
                        "unrestored": unrestored,
                    },
                ) from e

            await _cleanup_swaps(swaps)
            result.skipped_items = sorted(manifest.missing)
            await _remove_tree(staging)

        result.duration_seconds = time.monotonic() - start

        logger.info(
            "restore_promoted",
            backup_id=handle.backup_id,
            restore_id=handle.restore_id,
            items=result.promoted_items,
            skipped=result.skipped_items,
            files=result.promoted_files,
        )

        return result

    async def discard(self, handle: RestoreResult) -> None:
        """Remove a staged restore without promoting it."""
        await _remove_tree(handle.staging_path)
        logger.info("restore_discarded", restore_id=handle.restore_id, backup_id=handle.backup_id)

    def _check_staging_root(self, staging_root: Path) -> None:
        if is_within(staging_root, self.config.live_root):
            raise RestoreFailed(
                "staging root must not be the live root or inside it",
                details={"staging_root": str(staging_root)},
            )
        if is_within(staging_root, self.config.backup_root):
            raise RestoreFailed(
                "staging root must not be the backup root or inside it",
                details={"staging_root": str(staging_root)},
            )

    async def _unpack(self, prefix: str, manifest: BackupManifest, staging: Path) -> None:
        compressor = compressor_for_codec(manifest.compression)

        for name in manifest.directories:
            (staging / name).mkdir(parents=True, exist_ok=True)

        for path, entry in manifest.entries.items():
            try:
                stored = await self.backend.read(join_key(prefix, path))
            except ObjectNotFound:
                if entry.size:
                    raise
                stored = None
            content = await compressor.decompress(stored) if stored is not None else b""

            target = staging / path
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(content)


def _top_level_files(manifest: BackupManifest) -> List[str]:
    """Entries that are protected files, not files inside a protected directory."""
    return [
        path
        for path in manifest.entries
        if not any(path.startswith(name + "/") for name in manifest.directories)
    ]


def _promotion_plan(
    staging: Path,
    live_root: Path,
    manifest: BackupManifest,
    result: PromoteResult,
) -> List[Tuple[Path, Path]]:
    """
    List (staged source, live target) pairs to swap in, counting into result.

    A protected directory is swapped whole unless the backup recorded
    missing files inside it; then its files are swapped one by one.
    """
    plan: List[Tuple[Path, Path]] = []

    for name in manifest.directories:
        if any(m.startswith(name + "/") for m in manifest.missing):
            for path in manifest.entries:
                if path.startswith(name + "/"):
                    plan.append((staging / path, live_root / path))
        else:
            plan.append((staging / name, live_root / name))
        result.promoted_files += manifest.directories[name].file_count
        result.promoted_items.append(name)

    for path in _top_level_files(manifest):
        plan.append((staging / path, live_root / path))
        result.promoted_files += 1
        result.promoted_items.append(path)

    return plan


@dataclass
class PendingSwap:
    """
    One live path being replaced by staged content.

    The staged copy sits at `incoming` beside the target. The previous
    live content is kept at `outgoing` until the whole promotion is done.
    """

    target: Path
    incoming: Path
    outgoing: Path
    is_directory: bool
    had_target: bool = False
    applied: bool = False

    def apply(self) -> None:
        if self.is_directory:
            if self.had_target:
                self.target.rename(self.outgoing)
            try:
                self.incoming.rename(self.target)
            except OSError:
                if self.had_target:
                    self.outgoing.rename(self.target)
                raise
        else:
            os.replace(self.incoming, self.target)
        self.applied = True

    def roll_back(self) -> None:
        if not self.applied:
            return
        if self.is_directory:
            self.target.rename(self.incoming)
            if self.had_target:
                self.outgoing.rename(self.target)
        elif self.had_target:
            os.replace(self.outgoing, self.target)
        else:
            self.target.unlink(missing_ok=True)
        self.applied = False


async def _prepare_swap(source: Path, target: Path) -> PendingSwap:
    token = secrets.token_hex(4)
    swap = PendingSwap(
        target=target,
        incoming=target.with_name(f".{target.name}.restore-{token}"),
        outgoing=target.with_name(f".{target.name}.old-{token}"),
        is_directory=source.is_dir(),
    )

    loop = asyncio.get_event_loop()
    target.parent.mkdir(parents=True, exist_ok=True)

    try:
        if swap.is_directory:
            swap.had_target = target.exists() or target.is_symlink()
            await loop.run_in_executor(None, shutil.copytree, source, swap.incoming)
        else:
            # Files are replaced in one rename, so the old content is copied aside
            swap.had_target = target.is_file()
            if swap.had_target:
                await loop.run_in_executor(None, shutil.copy2, target, swap.outgoing)
            async with aiofiles.open(source, "rb") as src:
                content = await src.read()
            async with aiofiles.open(swap.incoming, "wb") as dst:
                await dst.write(content)
    except OSError:
        await _remove_tree(swap.incoming)
        await _remove_tree(swap.outgoing)
        raise

    return swap


def _roll_back(swaps: List[PendingSwap]) -> List[str]:
    """Undo applied swaps, newest first. Returns targets that could not be restored."""
    unrestored: List[str] = []
    for swap in reversed(swaps):
        try:
            swap.roll_back()
        except OSError as e:
            logger.error("promote_rollback_failed", target=str(swap.target), error=str(e))
            unrestored.append(str(swap.target))
    return unrestored


async def _cleanup_swaps(swaps: Iterable[PendingSwap]) -> None:
    for swap in swaps:
        await _remove_tree(swap.incoming)
        await _remove_tree(swap.outgoing)


async def _remove_tree(path: Path | None) -> None:
    if path is None or not (path.exists() or path.is_symlink()):
        return
    if path.is_dir() and not path.is_symlink():
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, shutil.rmtree, path, True)
    else:
        path.unlink(missing_ok=True)
