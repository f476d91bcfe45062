# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Retention - Count-based cleanup of old backups.

Each category keeps at most N valid backups. The oldest beyond the limit
are removed, ordered by (timestamp, backup_id). Manual and emergency
backups are only removed when the caller explicitly includes them.

Removal of a backup (by retention or explicit request) and restore share
one lock, so a backup is never deleted while a restore reads it.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List

import structlog

from storeguard.backup.catalog import BackupCatalog, backup_prefix
from storeguard.config import BackupCategory, EXEMPT_CATEGORIES, RetentionPolicy
from storeguard.exceptions import NotFound, RetentionDeleteFailure, StorageError
from storeguard.storage.base import StorageBackend, join_key
from storeguard.storage.local import TRASH_PREFIX

logger = structlog.get_logger()

INCOMING_PREFIX = ".incoming-"


@dataclass
class RetentionResult:
    """Outcome of one retention pass over a category."""

    category: BackupCategory
    removed: List[str] = field(default_factory=list)
    failed: List[RetentionDeleteFailure] = field(default_factory=list)
    kept: int = 0
    skipped: bool = False  # Exempt category, nothing considered

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "removed": list(self.removed),
            "failed": [f.details.get("backup_id") for f in self.failed],
            "kept": self.kept,
            "skipped": self.skipped,
        }


class RetentionManager:
    """Enforces per-category backup limits."""

    def __init__(
        self,
        backend: StorageBackend,
        catalog: BackupCatalog,
        retention: RetentionPolicy,
        root_lock: asyncio.Lock,
    ):
        self.backend = backend
        self.catalog = catalog
        self.retention = dict(retention)
        self.root_lock = root_lock

    async def enforce(
        self,
        category: BackupCategory,
        include_exempt: bool = False,
    ) -> RetentionResult:
        """
        Remove the oldest backups of a category beyond its limit.

        Deletion failures are collected, logged, and left for the next
        pass. They are never raised.

        Args:
            category: Category to clean up
            include_exempt: Also clean up manual/emergency backups

        Returns:
            RetentionResult
        """
        category = BackupCategory(category)
        result = RetentionResult(category=category)

        if category in EXEMPT_CATEGORIES and not include_exempt:
            result.skipped = True
            result.kept = len(await self.catalog.manifests(category))
            logger.debug("retention_skipped_exempt", category=category.value)
            return result

        limit = self.retention[category]

        async with self.root_lock:
            manifests = await self.catalog.manifests(category)
            expired = manifests[:max(len(manifests) - limit, 0)]

            for manifest in expired:
                try:
                    await self.backend.delete(backup_prefix(category, manifest.backup_id))
                except StorageError as e:
                    failure = RetentionDeleteFailure(
                        f"Failed to remove expired backup {manifest.backup_id}: {e}",
                        details={"backup_id": manifest.backup_id, "category": category.value},
                    )
                    result.failed.append(failure)
                    logger.error(
                        "retention_delete_failed",
                        backup_id=manifest.backup_id,
                        category=category.value,
                        error=str(e),
                    )
                    continue

                result.removed.append(manifest.backup_id)
                logger.info(
                    "retention_backup_removed",
                    backup_id=manifest.backup_id,
                    category=category.value,
                )

            result.kept = len(manifests) - len(result.removed)

        logger.info(
            "retention_enforced",
            category=category.value,
            limit=limit,
            removed=len(result.removed),
            failed=len(result.failed),
            kept=result.kept,
        )

        return result

    async def delete(self, backup_id: str) -> BackupCategory:
        """
        Remove one backup on request.

        Returns:
            Category the backup belonged to

        Raises:
            NotFound: If no valid backup has this identifier
        """
        async with self.root_lock:
            manifest = await self.catalog.find(backup_id)
            if manifest is None:
                raise NotFound(
                    f"Backup not found: {backup_id}",
                    details={"backup_id": backup_id},
                )
            await self.backend.delete(backup_prefix(manifest.category, backup_id))

        logger.info("backup_deleted", backup_id=backup_id, category=manifest.category.value)
        return manifest.category

    async def sweep_incomplete(self) -> List[str]:
        """
        Remove leftovers of runs that died mid-way.

        Only safe while no backup is being written, i.e. at engine start.

        Returns:
            Storage prefixes that were removed
        """
        removed: List[str] = []

        async with self.root_lock:
            for category in BackupCategory:
                for name in await self.backend.list(category.value):
                    if not name.startswith((INCOMING_PREFIX, TRASH_PREFIX)):
                        continue
                    prefix = join_key(category.value, name)
                    try:
                        await self.backend.delete(prefix)
                    except StorageError as e:
                        logger.warning("incomplete_backup_sweep_failed", prefix=prefix, error=str(e))
                        continue
                    removed.append(prefix)

        if removed:
            logger.info("incomplete_backups_swept", count=len(removed), prefixes=removed)

        return removed
