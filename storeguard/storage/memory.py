# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
In-memory storage backend.

Useful for embedding the engine in tests or short-lived tools where the
backup history does not need to outlive the process.
"""

from typing import Dict, List

from storeguard.config import is_safe_relative_path
from storeguard.exceptions import ObjectNotFound, StorageError, WriteFailure


class MemoryStorageBackend:
    """Keeps backup artifacts in a dict keyed by storage key."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}

    def _check(self, key: str) -> str:
        if key and not is_safe_relative_path(key):
            raise StorageError(f"Unsafe storage key: {key!r}", details={"key": key})
        return key

    def _under(self, prefix: str) -> List[str]:
        if not prefix:
            return list(self.objects)
        return [k for k in self.objects if k == prefix or k.startswith(prefix + "/")]

    async def write(self, key: str, data: bytes) -> int:
        self.objects[self._check(key)] = bytes(data)
        return len(data)

    async def read(self, key: str) -> bytes:
        try:
            return self.objects[self._check(key)]
        except KeyError as e:
            raise ObjectNotFound(f"Backup object not found: {key}", details={"key": key}) from e

    async def exists(self, key: str) -> bool:
        return bool(self._under(self._check(key)))

    async def list(self, prefix: str = "") -> List[str]:
        self._check(prefix)
        start = f"{prefix}/" if prefix else ""
        names = {
            key[len(start):].split("/", 1)[0]
            for key in self.objects
            if key.startswith(start)
        }
        return sorted(names)

    async def delete(self, prefix: str) -> None:
        for key in self._under(self._check(prefix)):
            del self.objects[key]

    async def move(self, src_prefix: str, dst_prefix: str) -> None:
        keys = self._under(self._check(src_prefix))
        if not keys:
            raise ObjectNotFound(
                f"Cannot move missing prefix: {src_prefix}",
                details={"src": src_prefix, "dst": dst_prefix},
            )
        if self._under(self._check(dst_prefix)):
            raise WriteFailure(
                f"Move destination already exists: {dst_prefix}",
                details={"src": src_prefix, "dst": dst_prefix},
            )
        for key in keys:
            self.objects[dst_prefix + key[len(src_prefix):]] = self.objects.pop(key)

    async def size(self, prefix: str = "") -> int:
        return sum(len(self.objects[k]) for k in self._under(self._check(prefix)))
