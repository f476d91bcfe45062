# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Backup Catalog - Read-only view of the backups on disk.

Everything the catalog reports is derived from manifests. A backup whose
manifest is unreadable, malformed, or inconsistent with where it is
stored is skipped with a warning; it is never listed and never offered
as a restore candidate. Hidden entries (in-progress and half-deleted
backups) are never visible.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

import structlog

from storeguard.backup.manifest import BackupManifest
from storeguard.config import BackupCategory, MANIFEST_FILENAME
from storeguard.exceptions import InvalidManifest, NotFound, StorageError
from storeguard.storage.base import StorageBackend, join_key

logger = structlog.get_logger()

_SIZE_UNITS = ["B", "KB", "MB", "GB"]


def format_bytes(size: int) -> str:
    """Render a byte count for humans, e.g. 1536 -> '1.5 KB'."""
    if size <= 0:
        return "0 B"
    value = float(size)
    index = 0
    while value >= 1024 and index < len(_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[index]}"


@dataclass(frozen=True)
class BackupSummary:
    """Listing row for one valid backup."""

    backup_id: str
    category: BackupCategory
    timestamp: datetime
    label: str | None
    file_count: int
    directory_count: int
    total_size: int  # Uncompressed bytes
    stored_size: int  # Bytes as stored
    compression: str
    missing_items: List[str] = field(default_factory=list)

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.total_size)

    @classmethod
    def from_manifest(cls, manifest: BackupManifest) -> "BackupSummary":
        return cls(
            backup_id=manifest.backup_id,
            category=manifest.category,
            timestamp=manifest.timestamp,
            label=manifest.label,
            file_count=manifest.total_files,
            directory_count=manifest.total_directories,
            total_size=manifest.total_size,
            stored_size=manifest.total_stored_size,
            compression=manifest.compression,
            missing_items=sorted(manifest.missing),
        )

    def to_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
            "label": self.label,
            "file_count": self.file_count,
            "directory_count": self.directory_count,
            "total_size": self.total_size,
            "stored_size": self.stored_size,
            "size_formatted": self.size_formatted,
            "compression": self.compression,
            "missing_items": list(self.missing_items),
        }


@dataclass(frozen=True)
class BackupStats:
    """Aggregate numbers over all valid backups."""

    count: int = 0
    total_size: int = 0  # Stored bytes
    total_original_size: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None
    by_category: Dict[str, int] = field(default_factory=dict)

    @property
    def total_size_formatted(self) -> str:
        return format_bytes(self.total_size)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_size": self.total_size,
            "total_original_size": self.total_original_size,
            "total_size_formatted": self.total_size_formatted,
            "oldest": self.oldest.isoformat() if self.oldest else None,
            "newest": self.newest.isoformat() if self.newest else None,
            "by_category": dict(self.by_category),
        }


def backup_prefix(category: BackupCategory, backup_id: str) -> str:
    """Storage prefix of a completed backup."""
    return join_key(BackupCategory(category).value, backup_id)


def sort_key(manifest: BackupManifest) -> Tuple[datetime, str]:
    """Chronological order, with the identifier breaking timestamp ties."""
    return (manifest.timestamp, manifest.backup_id)


class BackupCatalog:
    """Lists and looks up backups from their manifests."""

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    async def load_manifest(self, category: BackupCategory, backup_id: str) -> BackupManifest:
        """
        Read and check the manifest of one stored backup.

        Raises:
            InvalidManifest: If the manifest is missing, malformed, or does
                not belong where it is stored
        """
        prefix = backup_prefix(category, backup_id)
        try:
            raw = await self.backend.read(join_key(prefix, MANIFEST_FILENAME))
        except StorageError as e:
            raise InvalidManifest(
                f"Manifest unreadable for {prefix}: {e}",
                details={"prefix": prefix},
            ) from e

        manifest = BackupManifest.from_json(raw)

        if manifest.backup_id != backup_id:
            raise InvalidManifest(
                "Manifest backupId does not match its directory",
                details={"prefix": prefix, "backup_id": manifest.backup_id},
            )
        if manifest.category != BackupCategory(category):
            raise InvalidManifest(
                "Manifest category does not match its parent directory",
                details={"prefix": prefix, "category": manifest.category.value},
            )

        return manifest

    async def manifests(self, category: BackupCategory | None = None) -> List[BackupManifest]:
        """All valid manifests, oldest first."""
        categories: Iterable[BackupCategory] = (
            [BackupCategory(category)] if category is not None else list(BackupCategory)
        )

        found: List[BackupManifest] = []
        for cat in categories:
            for name in await self.backend.list(cat.value):
                if name.startswith("."):
                    continue
                try:
                    found.append(await self.load_manifest(cat, name))
                except InvalidManifest as e:
                    logger.warning(
                        "invalid_backup_skipped",
                        category=cat.value,
                        backup_id=name,
                        error=str(e),
                    )

        return sorted(found, key=sort_key)

    async def list(self, category: BackupCategory | None = None) -> List[BackupSummary]:
        """
        List valid backups, newest first.

        Args:
            category: Restrict to one category (default: all)

        Returns:
            List of BackupSummary
        """
        manifests = await self.manifests(category)
        return [BackupSummary.from_manifest(m) for m in reversed(manifests)]

    async def stats(self) -> BackupStats:
        manifests = await self.manifests()
        if not manifests:
            return BackupStats()

        by_category: Dict[str, int] = {}
        for manifest in manifests:
            key = manifest.category.value
            by_category[key] = by_category.get(key, 0) + 1

        return BackupStats(
            count=len(manifests),
            total_size=sum(m.total_stored_size for m in manifests),
            total_original_size=sum(m.total_size for m in manifests),
            oldest=manifests[0].timestamp,
            newest=manifests[-1].timestamp,
            by_category=by_category,
        )

    async def find(self, backup_id: str) -> BackupManifest | None:
        """Locate a valid backup by identifier in any category."""
        if not backup_id or backup_id.startswith(".") or "/" in backup_id:
            return None
        for category in BackupCategory:
            if backup_id not in await self.backend.list(category.value):
                continue
            try:
                return await self.load_manifest(category, backup_id)
            except InvalidManifest as e:
                logger.warning("invalid_backup_requested", backup_id=backup_id, error=str(e))
                return None
        return None

    async def get(self, backup_id: str) -> Tuple[BackupSummary, BackupManifest]:
        """
        Look up one backup.

        Raises:
            NotFound: If no valid backup has this identifier
        """
        manifest = await self.find(backup_id)
        if manifest is None:
            raise NotFound(
                f"Backup not found: {backup_id}",
                details={"backup_id": backup_id},
            )
        return BackupSummary.from_manifest(manifest), manifest

    async def newest(self, category: BackupCategory) -> BackupSummary | None:
        manifests = await self.manifests(category)
        if not manifests:
            return None
        return BackupSummary.from_manifest(manifests[-1])
