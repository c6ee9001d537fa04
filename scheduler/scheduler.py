"""Central scheduler: cron-triggered reminders and maintenance sweeps on APScheduler."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from config.settings import settings
from notifications.bus import EventBus
from scheduler.jobs import (
    CLEANUP_JOBS_CRON,
    CLEANUP_NOTIFICATIONS_CRON,
    EXPIRED_REMINDER_CRON,
    EXPIRING_SOON_CRON,
    EXPIRING_TODAY_CRON,
    MARK_EXPIRED_CRON,
    MISFIRE_GRACE_SECONDS,
    RESET_STUCK_JOBS_CRON,
    STUCK_PENDING_CRON,
    WEEKLY_DIGEST_CRON,
)
from scheduler.reminders import MaintenanceTasks, SubscriptionReminders

log = structlog.get_logger(__name__)


class Scheduler:
    """Central scheduler for all periodic tasks."""

    def __init__(self, bus: EventBus, db_pool: asyncpg.Pool) -> None:
        self.reminders = SubscriptionReminders(bus, db_pool)
        self.maintenance = MaintenanceTasks(db_pool)
        self._scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
        self._registered = False

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def register_jobs(self) -> None:
        if self._registered:
            return
        self._add("subscription_expiring_soon", self._expiring_soon, EXPIRING_SOON_CRON)
        self._add("subscription_expiring_today", self._expiring_today, EXPIRING_TODAY_CRON)
        self._add("subscription_expired_reminder", self._expired_reminders, EXPIRED_REMINDER_CRON)
        self._add("weekly_digest", self._weekly_digest, WEEKLY_DIGEST_CRON)
        self._add("mark_expired_notifications", self._mark_expired, MARK_EXPIRED_CRON)
        self._add("stuck_pending_report", self._stuck_pending, STUCK_PENDING_CRON)
        self._add("reset_stuck_jobs", self._reset_stuck_jobs, RESET_STUCK_JOBS_CRON)
        self._add("cleanup_old_jobs", self._cleanup_jobs, CLEANUP_JOBS_CRON)
        self._add("cleanup_old_notifications", self._cleanup_notifications, CLEANUP_NOTIFICATIONS_CRON)
        self._registered = True

    def _add(self, job_id: str, func: Callable[[], Awaitable[Any]], cron: dict[str, Any]) -> None:
        self._scheduler.add_job(
            func,
            trigger=CronTrigger(timezone=settings.scheduler_timezone, **cron),
            id=job_id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
            replace_existing=True,
        )

    def start(self) -> None:
        """Start all scheduled tasks."""
        self.register_jobs()
        self._scheduler.start()
        log.info("scheduler_all_tasks_started", jobs=self.job_ids())

    async def stop(self) -> None:
        """Stop all scheduled tasks."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # shutdown is scheduled on the event loop; let it run
            await asyncio.sleep(0)
            log.info("scheduler_stopped")

    async def _expiring_soon(self) -> None:
        try:
            await self.reminders.send_expiring_soon()
        except Exception as e:
            log.error("expiring_soon_job_error", error=str(e))

    async def _expiring_today(self) -> None:
        try:
            await self.reminders.send_expiring_today()
        except Exception as e:
            log.error("expiring_today_job_error", error=str(e))

    async def _expired_reminders(self) -> None:
        try:
            await self.reminders.send_expired_reminders()
        except Exception as e:
            log.error("expired_reminder_job_error", error=str(e))

    async def _weekly_digest(self) -> None:
        try:
            await self.reminders.send_weekly_digest()
        except Exception as e:
            log.error("weekly_digest_job_error", error=str(e))

    async def _mark_expired(self) -> None:
        try:
            await self.maintenance.mark_expired_notifications()
        except Exception as e:
            log.error("mark_expired_job_error", error=str(e))

    async def _stuck_pending(self) -> None:
        try:
            await self.maintenance.report_stuck_pending()
        except Exception as e:
            log.error("stuck_pending_job_error", error=str(e))

    async def _reset_stuck_jobs(self) -> None:
        try:
            await self.maintenance.reset_stuck_jobs()
        except Exception as e:
            log.error("reset_stuck_jobs_job_error", error=str(e))

    async def _cleanup_jobs(self) -> None:
        try:
            await self.maintenance.cleanup_old_jobs()
        except Exception as e:
            log.error("cleanup_jobs_job_error", error=str(e))

    async def _cleanup_notifications(self) -> None:
        try:
            await self.maintenance.cleanup_old_notifications()
        except Exception as e:
            log.error("cleanup_notifications_job_error", error=str(e))
