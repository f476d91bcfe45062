# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup runs, validation, retention, and restore.
"""

from storeguard.backup.manifest import (
    BackupManifest,
    DirectoryEntry,
    ManifestBuilder,
    ManifestEntry,
)

from storeguard.backup.validator import (
    IntegrityValidator,
    ValidationReport,
)

from storeguard.backup.catalog import (
    BackupCatalog,
    BackupStats,
    BackupSummary,
    format_bytes,
)

from storeguard.backup.retention import (
    RetentionManager,
    RetentionResult,
)

from storeguard.backup.writer import (
    BackupResult,
    BackupWriter,
)

from storeguard.backup.restore import (
    PromoteResult,
    RestoreEngine,
    RestoreResult,
    StagingHandle,
)

__all__ = [
    # Manifest
    "BackupManifest",
    "DirectoryEntry",
    "ManifestBuilder",
    "ManifestEntry",
    # Validation
    "IntegrityValidator",
    "ValidationReport",
    # Catalog
    "BackupCatalog",
    "BackupStats",
    "BackupSummary",
    "format_bytes",
    # Retention
    "RetentionManager",
    "RetentionResult",
    # Writer
    "BackupResult",
    "BackupWriter",
    # Restore
    "PromoteResult",
    "RestoreEngine",
    "RestoreResult",
    "StagingHandle",
]
