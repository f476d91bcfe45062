# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Backup Writer - One backup run, all or nothing.

A run captures every protected item, compresses it, writes it under a
hidden incoming prefix, writes the manifest, validates what was written,
and only then moves the backup into place. Any failure (including a
timeout or task cancellation) removes the incoming prefix, so a partial
backup is never visible.

Safety features:
- Checksums are computed from the exact bytes that are stored
- One run per category at a time; a second request is rejected
- Retention runs only after a backup is in place, and never fails it
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Dict

import structlog
from ulid import ULID

from storeguard.backup.catalog import BackupSummary, backup_prefix
from storeguard.backup.manifest import BackupManifest, ManifestBuilder, ManifestDraft
from storeguard.backup.retention import INCOMING_PREFIX, RetentionManager, RetentionResult
from storeguard.backup.validator import IntegrityValidator
from storeguard.config import BackupCategory, MANIFEST_FILENAME, StoreGuardConfig
from storeguard.exceptions import (
    BackupFailed,
    BackupInProgress,
    OperationTimeout,
    StorageError,
    StoreGuardError,
    ValidationMismatch,
)
from storeguard.storage.base import StorageBackend, join_key
from storeguard.vault.compressor import Compressor

logger = structlog.get_logger()


@dataclass
class BackupResult:
    """Result of a successful backup run."""

    backup_id: str
    manifest: BackupManifest
    summary: BackupSummary
    retention: RetentionResult | None = None
    duration_seconds: float = 0.0


class BackupWriter:
    """Runs backups for the configured protected items."""

    def __init__(
        self,
        config: StoreGuardConfig,
        backend: StorageBackend,
        builder: ManifestBuilder,
        validator: IntegrityValidator,
        retention: RetentionManager,
        compressor: Compressor | None = None,
    ):
        self.config = config
        self.backend = backend
        self.builder = builder
        self.validator = validator
        self.retention = retention
        self.compressor = compressor or Compressor(
            level=config.compression_level,
            enabled=config.compress_backups,
        )
        self._locks: Dict[BackupCategory, asyncio.Lock] = {
            category: asyncio.Lock() for category in BackupCategory
        }

    def is_running(self, category: BackupCategory) -> bool:
        return self._locks[BackupCategory(category)].locked()

    async def run(self, category: BackupCategory, label: str | None = None) -> BackupResult:
        """
        Create one backup of the protected items.

        Args:
            category: Retention category of the new backup
            label: Optional human label stored in the manifest

        Returns:
            BackupResult with the manifest and listing summary

        Raises:
            BackupInProgress: If a backup of this category is running
            BackupFailed: If the run failed; nothing was left behind
        """
        category = BackupCategory(category)
        lock = self._locks[category]

        if lock.locked():
            raise BackupInProgress(
                f"a {category.value} backup is already running",
                details={"category": category.value},
            )

        async with lock:
            backup_id = str(ULID())
            incoming = join_key(category.value, f"{INCOMING_PREFIX}{backup_id}")
            start = time.monotonic()

            logger.info(
                "backup_started",
                backup_id=backup_id,
                category=category.value,
                items=len(self.config.protected_items),
            )

            budget = asyncio.timeout(self.config.operation_timeout_seconds)
            try:
                async with budget:
                    manifest = await self._write(backup_id, category, label, incoming)
            except asyncio.CancelledError:
                await self._discard(incoming, backup_id)
                logger.warning("backup_cancelled", backup_id=backup_id, category=category.value)
                raise
            except ValidationMismatch as e:
                await self._discard(incoming, backup_id)
                logger.error(
                    "backup_validation_failed",
                    backup_id=backup_id,
                    mismatches=e.mismatches,
                )
                raise BackupFailed(
                    "stored data failed integrity validation",
                    details={"backup_id": backup_id, "mismatches": e.mismatches},
                ) from e
            except (StoreGuardError, OSError) as e:
                await self._discard(incoming, backup_id)
                # TimeoutError is an OSError; only the expired budget is a timeout
                if budget.expired():
                    logger.error("backup_timed_out", backup_id=backup_id, category=category.value)
                    timeout = OperationTimeout(
                        f"Backup exceeded {self.config.operation_timeout_seconds}s",
                        details={"backup_id": backup_id},
                    )
                    timeout.__cause__ = e
                    raise BackupFailed(
                        "operation timed out",
                        details={"backup_id": backup_id, "category": category.value},
                    ) from timeout
                logger.error("backup_failed", backup_id=backup_id, error=str(e))
                raise BackupFailed(
                    str(e),
                    details={"backup_id": backup_id, "category": category.value},
                ) from e

            duration = time.monotonic() - start

        logger.info(
            "backup_created",
            backup_id=backup_id,
            category=category.value,
            files=manifest.total_files,
            directories=manifest.total_directories,
            size=manifest.total_size,
            stored_size=manifest.total_stored_size,
            missing=sorted(manifest.missing),
            duration=round(duration, 3),
        )

        retention = await self._apply_retention(category)

        return BackupResult(
            backup_id=backup_id,
            manifest=manifest,
            summary=BackupSummary.from_manifest(manifest),
            retention=retention,
            duration_seconds=duration,
        )

    async def _write(
        self,
        backup_id: str,
        category: BackupCategory,
        label: str | None,
        incoming: str,
    ) -> BackupManifest:
        # Step 1: Capture, compress and store every file
        draft = ManifestDraft()
        async for captured in self.builder.capture(
            self.config.protected_items, self.config.live_root, draft
        ):
            stored = await self.compressor.compress(captured.content)
            await self.backend.write(join_key(incoming, captured.entry.path), stored)
            draft.add(replace(captured.entry, stored_size=len(stored)))

        # Step 2: Manifest
        manifest = draft.finish(
            self.builder.checksum,
            backup_id=backup_id,
            category=category,
            label=label,
            compression=self.compressor.codec,
        )
        await self.backend.write(join_key(incoming, MANIFEST_FILENAME), manifest.to_json())

        # Step 3: Validate what actually landed in storage
        report = await self.validator.validate(incoming, manifest)
        if not report.valid:
            raise ValidationMismatch(
                f"Backup {backup_id} does not match its manifest",
                mismatches=report.mismatches,
                details={"reasons": report.reasons},
            )

        # Step 4: Publish
        await self.backend.move(incoming, backup_prefix(category, backup_id))

        return manifest

    async def _apply_retention(self, category: BackupCategory) -> RetentionResult | None:
        try:
            return await self.retention.enforce(category)
        except StoreGuardError as e:
            logger.error("retention_failed", category=category.value, error=str(e))
            return None

    async def _discard(self, prefix: str, backup_id: str) -> None:
        try:
            await self.backend.delete(prefix)
        except StorageError as e:
            # Swept at next engine start
            logger.error("backup_cleanup_failed", backup_id=backup_id, prefix=prefix, error=str(e))
        else:
            logger.info("backup_discarded", backup_id=backup_id)
