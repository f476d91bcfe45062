# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
StoreGuard Scheduler - Periodic backups driven by APScheduler.

Each scheduled category gets one interval job. The first run is derived
from the newest existing backup of that category, so restarting the
process neither skips a due backup nor takes an extra one. Missed ticks
are coalesced into a single run.
"""

from datetime import datetime, timedelta, UTC
from typing import Any, Awaitable, Callable, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storeguard.backup.catalog import BackupCatalog
from storeguard.config import BackupCategory
from storeguard.exceptions import BackupInProgress

logger = structlog.get_logger()

RunBackup = Callable[[BackupCategory, str | None], Awaitable[Any]]


def job_id(category: BackupCategory) -> str:
    return f"storeguard_{BackupCategory(category).value}"


class BackupScheduler:
    """Runs backups per category on a fixed interval."""

    def __init__(
        self,
        catalog: BackupCatalog,
        run_backup: RunBackup,
        schedule_hours: Dict[BackupCategory, float],
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.catalog = catalog
        self.run_backup = run_backup
        self.schedule_hours = dict(schedule_hours)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=UTC)

        self.runs = 0
        self.last_run_at: datetime | None = None
        self.last_backup_id: str | None = None
        self.last_error: str | None = None

    async def next_run_time(
        self,
        category: BackupCategory,
        now: datetime | None = None,
    ) -> datetime:
        """
        When the next backup of a category is due.

        Returns newest backup + interval, or now if that is already past
        or there is no backup yet.
        """
        now = now or datetime.now(UTC)
        newest = await self.catalog.newest(category)
        if newest is None:
            return now
        due = newest.timestamp + timedelta(hours=self.schedule_hours[BackupCategory(category)])
        return max(due, now)

    async def start(self) -> None:
        """Add one job per scheduled category and start APScheduler."""
        for category, hours in self.schedule_hours.items():
            first = await self.next_run_time(category)
            self.scheduler.add_job(
                self._scheduled_run,
                trigger=IntervalTrigger(hours=hours, timezone=UTC),
                args=[category],
                id=job_id(category),
                replace_existing=True,
                next_run_time=first,
                coalesce=True,
                max_instances=1,
            )
            logger.info(
                "backup_job_scheduled",
                category=category.value,
                interval_hours=hours,
                next_run=first.isoformat(),
            )

        if not self.scheduler.running:
            self.scheduler.start()

        logger.info("scheduler_started", jobs=len(self.schedule_hours))

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")

    async def trigger(self, category: BackupCategory, label: str | None = None) -> Any:
        """
        Run a backup now, outside the schedule.

        Failures propagate to the caller.
        """
        category = BackupCategory(category)
        logger.info("backup_triggered", category=category.value, label=label)
        result = await self.run_backup(category, label)
        self._record_success(result)
        return result

    def status(self) -> dict:
        jobs = []
        for category, hours in self.schedule_hours.items():
            job = self.scheduler.get_job(job_id(category))
            next_run = getattr(job, "next_run_time", None) if job else None
            jobs.append({
                "category": category.value,
                "interval_hours": hours,
                "next_run_time": next_run.isoformat() if next_run else None,
            })

        return {
            "running": self.scheduler.running,
            "jobs": jobs,
            "runs": self.runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_backup_id": self.last_backup_id,
            "last_error": self.last_error,
        }

    async def _scheduled_run(self, category: BackupCategory) -> None:
        """Run scheduled backup."""
        logger.info("scheduled_backup_starting", category=category.value)
        try:
            result = await self.run_backup(category, None)
        except BackupInProgress:
            logger.info("scheduled_backup_skipped_in_progress", category=category.value)
            return
        except Exception as e:
            self.last_error = str(e)
            logger.error("scheduled_backup_failed", category=category.value, error=str(e))
            return

        self._record_success(result)
        logger.info(
            "scheduled_backup_completed",
            category=category.value,
            backup_id=self.last_backup_id,
        )

    def _record_success(self, result: Any) -> None:
        self.runs += 1
        self.last_run_at = datetime.now(UTC)
        self.last_backup_id = getattr(result, "backup_id", None)
