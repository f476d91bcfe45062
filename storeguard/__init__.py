# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard - Backup and restore engine for file-based JSON data stores.

Takes verified, checksummed, compressed snapshots of the protected JSON
documents and directories, keeps them under per-category retention, and
restores them through a verified staging area before anything touches
the live data. Package name: storeguard.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from storeguard.builder import create_config
from storeguard.config import BackupCategory, StoreGuardConfig

# Core functions
from storeguard.core import (
    initialize_engine,
    create_backup,
    create_emergency_backup,
    list_backups,
    get_backup_stats,
    get_backup_details,
    restore_backup,
    promote_restore,
    discard_restore,
    delete_backup,
    enforce_retention,
    recover_if_missing,
    get_metrics,
    shutdown_engine,
)

# Environment-based configuration and profiles (additional helpers)
from storeguard.env import (
    create_config_from_env,
    extended_retention,
    minimal_retention,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "extended_retention",
    "minimal_retention",
    "BackupCategory",
    "StoreGuardConfig",
    # Core engine functions
    "initialize_engine",
    "create_backup",
    "create_emergency_backup",
    "list_backups",
    "get_backup_stats",
    "get_backup_details",
    "restore_backup",
    "promote_restore",
    "discard_restore",
    "delete_backup",
    "enforce_retention",
    "recover_if_missing",
    "get_metrics",
    "shutdown_engine",
]
