# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Compressor - Compression pipeline for backup files.

All stored items pass through zstd with frame checksums enabled, so a
damaged frame fails loudly on decompression instead of yielding wrong
bytes. The transform is lossless: decompress(compress(x)) == x.

Compression can be disabled, in which case the transform is the
identity. The codec used for a backup is recorded in its manifest so a
restore always picks the codec the backup was written with.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import zstandard as zstd

from storeguard.exceptions import CorruptData

# Thread pool for CPU-bound compression of large payloads
_executor = ThreadPoolExecutor(max_workers=4)

# Default compression settings
DEFAULT_ZSTD_LEVEL = 19  # Maximum compression
OFFLOAD_THRESHOLD = 1024 * 1024  # Payloads above 1MB go to the thread pool

CODEC_ZSTD = "zstd"
CODEC_NONE = "none"


@dataclass(frozen=True)
class Compressor:
    """Reversible byte transform used for stored backup items."""

    level: int = DEFAULT_ZSTD_LEVEL
    enabled: bool = True

    @property
    def codec(self) -> str:
        return CODEC_ZSTD if self.enabled else CODEC_NONE

    async def compress(self, data: bytes) -> bytes:
        """
        Compress data for backup storage.

        Args:
            data: Raw file content

        Returns:
            Compressed bytes (or the input unchanged when disabled)
        """
        if not self.enabled:
            return data

        if len(data) > OFFLOAD_THRESHOLD:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(
                _executor, _compress_zstd_sync, data, self.level
            )
        return _compress_zstd_sync(data, self.level)

    async def decompress(self, data: bytes) -> bytes:
        """
        Decompress backup data.

        Raises:
            CorruptData: If the stored bytes are not a valid frame
        """
        if not self.enabled:
            return data

        if len(data) > OFFLOAD_THRESHOLD:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(_executor, _decompress_zstd_sync, data)
        return _decompress_zstd_sync(data)


def compressor_for_codec(codec: str, level: int = DEFAULT_ZSTD_LEVEL) -> Compressor:
    """
    Get the compressor matching a manifest's codec name.

    Raises:
        CorruptData: If the codec is unknown
    """
    if codec == CODEC_ZSTD:
        return Compressor(level=level, enabled=True)
    if codec == CODEC_NONE:
        return Compressor(level=level, enabled=False)
    raise CorruptData(f"Unknown compression codec: {codec!r}", details={"codec": codec})


def _compress_zstd_sync(data: bytes, level: int) -> bytes:
    """Synchronous zstd compression."""
    cctx = zstd.ZstdCompressor(level=level, write_checksum=True, write_content_size=True)
    return cctx.compress(data)


def _decompress_zstd_sync(data: bytes) -> bytes:
    """Synchronous zstd decompression."""
    dctx = zstd.ZstdDecompressor()
    try:
        return dctx.decompress(data)
    except zstd.ZstdError as e:
        raise CorruptData(
            f"Decompression failed: {e}",
            details={"compressed_size": len(data)},
        ) from e


def get_compression_stats(
    original_size: int,
    compressed_size: int,
) -> dict:
    """
    Calculate compression statistics.

    Args:
        original_size: Original data size in bytes
        compressed_size: Compressed data size in bytes

    Returns:
        Dict with compression statistics
    """
    if compressed_size == 0:
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 0,
            "space_saved_bytes": 0,
            "space_saved_percent": 0,
        }

    ratio = original_size / compressed_size
    saved_bytes = original_size - compressed_size
    saved_percent = (saved_bytes / original_size) * 100 if original_size > 0 else 0

    return {
        "original_size": original_size,
        "compressed_size": compressed_size,
        "compression_ratio": round(ratio, 2),
        "space_saved_bytes": saved_bytes,
        "space_saved_percent": round(saved_percent, 2),
    }
