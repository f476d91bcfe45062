# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage backend contract for backup artifacts.

Keys are POSIX-style relative paths ("daily/<backup_id>/colleges.json").
A "prefix" is a key that names a directory-like group of keys. Manifest,
validation, and retention logic only ever talk to this interface, so a
local disk and any other store share all of it.
"""

from typing import List, Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol for backup storage backends."""

    async def write(self, key: str, data: bytes) -> int:
        """Store bytes under key, replacing atomically. Returns bytes written."""
        ...

    async def read(self, key: str) -> bytes:
        """Return the bytes stored under key. Raises ObjectNotFound."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def list(self, prefix: str = "") -> List[str]:
        """Return the sorted names of the immediate children of prefix."""
        ...

    async def delete(self, prefix: str) -> None:
        """Remove a key or a whole prefix. Missing keys are ignored."""
        ...

    async def move(self, src_prefix: str, dst_prefix: str) -> None:
        """Rename a prefix in one step. The destination must not exist."""
        ...

    async def size(self, prefix: str = "") -> int:
        """Total stored bytes under prefix."""
        ...


def join_key(*parts: str) -> str:
    """Join key segments with '/', dropping empty segments."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))
