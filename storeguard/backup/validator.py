# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Integrity Validator - Check stored or staged data against a manifest.

Validation re-reads every item a manifest lists, undoes the compression
recorded in the manifest, and compares size and checksum. Directory
aggregates are recomputed and compared as well. Validation never writes.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List

import aiofiles
import structlog

from storeguard.backup.manifest import BackupManifest
from storeguard.exceptions import CorruptData, ObjectNotFound, StorageError
from storeguard.storage.base import StorageBackend, join_key
from storeguard.vault.checksum import ChecksumService
from storeguard.vault.compressor import Compressor, compressor_for_codec

logger = structlog.get_logger()

# Mismatch reasons
REASON_MISSING = "missing"
REASON_UNREADABLE = "unreadable"
REASON_CORRUPT = "corrupt_data"
REASON_SIZE = "size_mismatch"
REASON_CHECKSUM = "checksum_mismatch"
REASON_DIRECTORY = "directory_checksum_mismatch"
REASON_UNEXPECTED = "unexpected_file"


@dataclass
class ValidationReport:
    """Outcome of validating one backup or staging directory."""

    valid: bool
    mismatches: List[str] = field(default_factory=list)
    reasons: Dict[str, str] = field(default_factory=dict)
    checked: int = 0

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "mismatches": list(self.mismatches),
            "reasons": dict(self.reasons),
            "checked": self.checked,
        }


# Returns the raw bytes stored for a relative path. Raises ObjectNotFound
# when absent.
Fetcher = Callable[[str], Awaitable[bytes]]


class IntegrityValidator:
    """Re-reads and re-checksums backup content."""

    def __init__(
        self,
        backend: StorageBackend,
        checksum: ChecksumService | None = None,
    ):
        self.backend = backend
        self.checksum = checksum or ChecksumService()

    async def validate(self, backup_prefix: str, manifest: BackupManifest) -> ValidationReport:
        """
        Validate a stored backup.

        Args:
            backup_prefix: Storage prefix holding the backup's files
            manifest: Manifest the backup must match

        Returns:
            ValidationReport (valid only when nothing mismatched)
        """
        try:
            compressor = compressor_for_codec(manifest.compression)
        except CorruptData:
            return ValidationReport(
                valid=False,
                mismatches=["<manifest>"],
                reasons={"<manifest>": REASON_CORRUPT},
            )

        async def fetch(path: str) -> bytes:
            return await self.backend.read(join_key(backup_prefix, path))

        report = await self._check(manifest, fetch, compressor)
        self._log(report, target=backup_prefix, backup_id=manifest.backup_id)
        return report

    async def validate_directory(self, path: Path, manifest: BackupManifest) -> ValidationReport:
        """
        Validate uncompressed output (a restore staging directory).

        Besides the manifest entries, protected directories in the staging
        output must not contain files the manifest does not list.

        Args:
            path: Directory whose layout mirrors the live root
            manifest: Manifest the output must match

        Returns:
            ValidationReport (valid only when nothing mismatched)
        """
        root = Path(path)

        async def fetch(relative: str) -> bytes:
            try:
                async with aiofiles.open(root / relative, "rb") as f:
                    return await f.read()
            except (FileNotFoundError, IsADirectoryError) as e:
                raise ObjectNotFound(f"Staged file not found: {relative}") from e
            except OSError as e:
                raise StorageError(f"Failed to read staged file: {e}") from e

        report = await self._check(manifest, fetch, Compressor(enabled=False))

        for name in manifest.directories:
            for extra in _unexpected_files(root, name, manifest):
                report.mismatches.append(extra)
                report.reasons[extra] = REASON_UNEXPECTED
                report.valid = False

        self._log(report, target=str(root), backup_id=manifest.backup_id)
        return report

    async def _check(
        self,
        manifest: BackupManifest,
        fetch: Fetcher,
        compressor: Compressor,
    ) -> ValidationReport:
        report = ValidationReport(valid=True)
        actual: Dict[str, str] = {}

        for path, entry in manifest.entries.items():
            report.checked += 1
            reason = None

            try:
                content = await compressor.decompress(await fetch(path))
            except ObjectNotFound:
                if entry.size == 0:
                    # Empty files may legitimately have no stored object
                    actual[path] = self.checksum.digest(b"")
                    continue
                reason = REASON_MISSING
            except CorruptData:
                reason = REASON_CORRUPT
            except StorageError:
                reason = REASON_UNREADABLE
            else:
                actual[path] = self.checksum.digest(content)
                if len(content) != entry.size:
                    reason = REASON_SIZE
                elif actual[path] != entry.checksum:
                    reason = REASON_CHECKSUM

            if reason:
                report.mismatches.append(path)
                report.reasons[path] = reason
                report.valid = False

        for name, directory in manifest.directories.items():
            prefix = name + "/"
            recomputed = self.checksum.aggregate(
                (p[len(prefix):], digest)
                for p, digest in actual.items()
                if p.startswith(prefix)
            )
            if recomputed != directory.checksum:
                report.mismatches.append(name)
                report.reasons[name] = REASON_DIRECTORY
                report.valid = False

        return report

    def _log(self, report: ValidationReport, target: str, backup_id: str) -> None:
        if report.valid:
            logger.debug("validation_passed", backup_id=backup_id, target=target, checked=report.checked)
        else:
            logger.warning(
                "validation_failed",
                backup_id=backup_id,
                target=target,
                mismatches=report.mismatches,
            )


def _unexpected_files(root: Path, name: str, manifest: BackupManifest) -> List[str]:
    directory = root / name
    if not directory.is_dir():
        return []
    extras = []
    for dirpath, _dirnames, filenames in os.walk(directory):
        for filename in filenames:
            relative = (Path(dirpath) / filename).relative_to(root).as_posix()
            if relative not in manifest.entries:
                extras.append(relative)
    return sorted(extras)
