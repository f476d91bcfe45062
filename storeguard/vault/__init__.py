# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Safety Vault - Checksums, compression, and the operation journal.
"""

from storeguard.vault.checksum import ChecksumService

from storeguard.vault.compressor import (
    Compressor,
    compressor_for_codec,
    get_compression_stats,
    CODEC_NONE,
    CODEC_ZSTD,
)

from storeguard.vault.journal import (
    init_journal_db,
    journal_path,
    record_operation,
    list_operations,
    get_journal_stats,
    OperationRecord,
)

__all__ = [
    # Checksums
    "ChecksumService",
    # Compressor
    "Compressor",
    "compressor_for_codec",
    "get_compression_stats",
    "CODEC_NONE",
    "CODEC_ZSTD",
    # Journal functions
    "init_journal_db",
    "journal_path",
    "record_operation",
    "list_operations",
    "get_journal_stats",
    # Types
    "OperationRecord",
]
