# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Operation Journal - Append-only audit trail of engine operations.

Every backup, restore, promotion, deletion and retention pass is recorded
here with its outcome. Records are never deleted or modified.

The journal lives in the backup root as a hidden SQLite file, so it is
never mistaken for a backup category by the catalog.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from storeguard.exceptions import JournalError

logger = structlog.get_logger()

JOURNAL_FILENAME = ".journal.db"

# Operation kinds
KIND_BACKUP = "backup"
KIND_RESTORE = "restore"
KIND_PROMOTE = "promote"
KIND_DELETE = "delete"
KIND_RETENTION = "retention"

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


class OperationRecord(TypedDict):
    """Record of one engine operation."""

    id: int  # Auto-increment
    kind: str  # backup, restore, promote, delete, retention
    backup_id: str | None
    category: str | None
    timestamp: str  # ISO 8601
    status: str  # succeeded, failed
    details: dict


def journal_path(backup_root: Path) -> Path:
    return Path(backup_root) / JOURNAL_FILENAME


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    backup_id TEXT,
                    category TEXT,
                    timestamp TEXT NOT NULL,
                    status TEXT NOT NULL,
                    details TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_timestamp
                ON operations(timestamp)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_backup_id
                ON operations(backup_id)
            """)

            await db.commit()

        logger.info("journal_db_initialized", db_path=str(db_path))

    except (aiosqlite.Error, OSError) as e:
        raise JournalError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_operation(
    db: aiosqlite.Connection,
    kind: str,
    status: str,
    backup_id: str | None = None,
    category: str | None = None,
    details: dict | None = None,
) -> int:
    """
    Append one operation record.

    Args:
        db: SQLite database connection
        kind: Operation kind (backup, restore, promote, delete, retention)
        status: succeeded or failed
        backup_id: Backup the operation concerned, if any
        category: Backup category, if any
        details: JSON-serializable context (sizes, errors, counts)

    Returns:
        Record ID
    """
    now = datetime.now(UTC).isoformat()

    try:
        cursor = await db.execute(
            """
            INSERT INTO operations (kind, backup_id, category, timestamp, status, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (kind, backup_id, category, now, status, json.dumps(details or {}, default=str)),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record {kind} operation: {e}",
            details={"kind": kind, "backup_id": backup_id},
        ) from e

    logger.debug(
        "operation_recorded",
        record_id=cursor.lastrowid,
        kind=kind,
        status=status,
        backup_id=backup_id,
    )

    return cursor.lastrowid


async def list_operations(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
    kind: str | None = None,
    backup_id: str | None = None,
) -> List[OperationRecord]:
    """
    List operations, newest first, with pagination.

    Args:
        db: SQLite database connection
        limit: Maximum number of records to return
        offset: Number of records to skip
        kind: Optional filter by operation kind
        backup_id: Optional filter by backup

    Returns:
        List of operation records
    """
    query = "SELECT id, kind, backup_id, category, timestamp, status, details FROM operations"
    conditions: List[str] = []
    params: List = []

    if kind:
        conditions.append("kind = ?")
        params.append(kind)

    if backup_id:
        conditions.append("backup_id = ?")
        params.append(backup_id)

    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    query += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[OperationRecord] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(
                OperationRecord(
                    id=row[0],
                    kind=row[1],
                    backup_id=row[2],
                    category=row[3],
                    timestamp=row[4],
                    status=row[5],
                    details=json.loads(row[6]),
                )
            )

    return records


async def get_journal_stats(db: aiosqlite.Connection) -> dict:
    """
    Get journal statistics.

    Returns:
        Dict with operation counts by kind and status
    """
    stats = {}

    async with db.execute("SELECT COUNT(*) FROM operations") as cursor:
        row = await cursor.fetchone()
        stats["total_operations"] = row[0] if row else 0

    async with db.execute(
        "SELECT kind, COUNT(*) FROM operations GROUP BY kind"
    ) as cursor:
        stats["operations_by_kind"] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT COUNT(*) FROM operations WHERE status = ?", (STATUS_FAILED,)
    ) as cursor:
        row = await cursor.fetchone()
        stats["failed_operations"] = row[0] if row else 0

    async with db.execute(
        "SELECT timestamp FROM operations ORDER BY id DESC LIMIT 1"
    ) as cursor:
        row = await cursor.fetchone()
        stats["last_operation_at"] = row[0] if row else None

    return stats
