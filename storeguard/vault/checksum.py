# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Checksums - Content fingerprints for backup verification.

Checksums are computed over uncompressed content, so a manifest entry
can be checked against source data, stored backups, and staged restores
alike.
"""

import hashlib
from dataclasses import dataclass
from typing import AsyncIterable, Iterable, Tuple

DEFAULT_ALGORITHM = "sha256"

# Separator between name:checksum pairs in directory aggregates
AGGREGATE_SEPARATOR = "|"


@dataclass(frozen=True)
class ChecksumService:
    """Deterministic, collision-resistant content digests."""

    algorithm: str = DEFAULT_ALGORITHM

    def __post_init__(self) -> None:
        # Fail fast on unknown algorithm names
        hashlib.new(self.algorithm)

    def hasher(self):
        """Return a fresh incremental hash object."""
        return hashlib.new(self.algorithm)

    def digest(self, data: bytes) -> str:
        """
        Compute the hex digest of a byte string.

        Args:
            data: Content to fingerprint

        Returns:
            Hex-encoded digest
        """
        h = self.hasher()
        h.update(data)
        return h.hexdigest()

    async def digest_stream(self, chunks: AsyncIterable[bytes]) -> str:
        """
        Compute the hex digest of an async byte stream.

        Stream errors propagate to the caller.
        """
        h = self.hasher()
        async for chunk in chunks:
            h.update(chunk)
        return h.hexdigest()

    def aggregate(self, pairs: Iterable[Tuple[str, str]]) -> str:
        """
        Compute a directory checksum from (relative_name, checksum) pairs.

        The pairs are rendered as "name:checksum", sorted, and joined, so
        the result does not depend on enumeration order.
        """
        rendered = sorted(f"{name}:{checksum}" for name, checksum in pairs)
        return self.digest(AGGREGATE_SEPARATOR.join(rendered).encode("utf-8"))
