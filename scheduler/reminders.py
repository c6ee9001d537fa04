"""Time-triggered producers: subscription reminders, weekly digest, maintenance sweeps.

Producers only query and emit; delivery happens in the notification service.
Each subscription or user is handled in its own try block so one bad row
never aborts the run.
"""

from datetime import datetime, timedelta
from typing import Any

import asyncpg
import structlog
from config.settings import settings
from notifications.bus import EventBus
from notifications.emitters import (
    emit_subscription_expired_reminder,
    emit_subscription_expiring_soon,
    emit_subscription_expiring_today,
    emit_weekly_digest,
)
from notifications.preferences import Category
from storage.repositories.insight_repo import InsightRepository
from storage.repositories.job_repo import JobRepository
from storage.repositories.notification_repo import NotificationRepository
from storage.repositories.preference_repo import PreferenceRepository
from storage.repositories.subscription_repo import SubscriptionRepository
from utils.time_utils import days_between, utc_date, utc_day_window, utc_now

log = structlog.get_logger(__name__)


def reminder_key(subscription_id: str, kind: str, days: int, now: datetime) -> str:
    """Idempotency key for one reminder: one per subscription, kind, threshold and UTC day."""
    return f"{subscription_id}:{kind}:{days}:{utc_date(now).isoformat()}"


def digest_key(user_id: str, now: datetime) -> str:
    year, week, _ = utc_date(now).isocalendar()
    return f"{user_id}:weekly-digest:{year}-W{week:02d}"


class SubscriptionReminders:
    """Expiry reminders and the weekly digest."""

    def __init__(self, bus: EventBus, db_pool: asyncpg.Pool) -> None:
        self._bus = bus
        self.subscription_repo = SubscriptionRepository(db_pool)
        self.notification_repo = NotificationRepository(db_pool)
        self.preference_repo = PreferenceRepository(db_pool)
        self.insight_repo = InsightRepository(db_pool)

    async def _already_sent(self, key: str) -> bool:
        if not settings.reminder_idempotency_guard:
            return False
        return await self.notification_repo.exists_with_idempotency_key(key)

    async def send_expiring_soon(self, now: datetime | None = None) -> int:
        """Emit expiring-soon for premium subscriptions ending exactly N days from today."""
        now = now or utc_now()
        emitted = 0
        for days in settings.reminder_days_before_expiry:
            start, end = utc_day_window(days, now)
            subscriptions = await self.subscription_repo.find_ending_between(start, end)
            for sub in subscriptions:
                try:
                    key = reminder_key(sub["id"], "expiring-soon", days, now)
                    if await self._already_sent(key):
                        log.debug("reminder_already_sent", key=key)
                        continue
                    emit_subscription_expiring_soon(
                        self._bus,
                        user_id=sub["user_id"],
                        subscription_id=sub["id"],
                        end_date=sub["end_date"],
                        days_remaining=days,
                        auto_renew=bool(sub.get("auto_renew")),
                        idempotency_key=key,
                    )
                    emitted += 1
                except Exception as e:
                    log.error("scheduler_user_error", job="expiring_soon", subscription_id=sub.get("id"), error=str(e))
        log.info("expiring_soon_reminders_sent", count=emitted)
        return emitted

    async def send_expiring_today(self, now: datetime | None = None) -> int:
        """Emit expiring-today for premium subscriptions ending between now and the end of today."""
        now = now or utc_now()
        _, end_of_day = utc_day_window(0, now)
        subscriptions = await self.subscription_repo.find_ending_between(now, end_of_day)
        emitted = 0
        for sub in subscriptions:
            try:
                key = reminder_key(sub["id"], "expiring-today", 0, now)
                if await self._already_sent(key):
                    continue
                emit_subscription_expiring_today(
                    self._bus,
                    user_id=sub["user_id"],
                    subscription_id=sub["id"],
                    end_date=sub["end_date"],
                    idempotency_key=key,
                )
                emitted += 1
            except Exception as e:
                log.error("scheduler_user_error", job="expiring_today", subscription_id=sub.get("id"), error=str(e))
        log.info("expiring_today_reminders_sent", count=emitted)
        return emitted

    async def send_expired_reminders(self, now: datetime | None = None) -> int:
        """Emit expired-reminder for premium subscriptions that ended exactly N days ago."""
        now = now or utc_now()
        emitted = 0
        for days in settings.expired_reminder_days:
            start, end = utc_day_window(-days, now)
            subscriptions = await self.subscription_repo.find_ending_between(
                start, end, statuses=("active", "expired")
            )
            for sub in subscriptions:
                try:
                    key = reminder_key(sub["id"], "expired-reminder", days, now)
                    if await self._already_sent(key):
                        continue
                    emit_subscription_expired_reminder(
                        self._bus,
                        user_id=sub["user_id"],
                        subscription_id=sub["id"],
                        days_expired=days_between(now, sub["end_date"]),
                        idempotency_key=key,
                    )
                    emitted += 1
                except Exception as e:
                    log.error("scheduler_user_error", job="expired_reminder", subscription_id=sub.get("id"), error=str(e))
        log.info("expired_reminders_sent", count=emitted)
        return emitted

    async def send_weekly_digest(self, now: datetime | None = None) -> int:
        """Emit a weekly digest of top recent insights to every user who wants one."""
        now = now or utc_now()
        since = now - timedelta(days=settings.digest_lookback_days)
        candidates = await self.preference_repo.find_users_opted_into(Category.CONTENT, "personalized_digest")
        users = [(u, p) for u, p in candidates if p.content.personalized_digest.frequency == "weekly"]
        premium_ids = await self.subscription_repo.premium_user_ids([u["id"] for u, _ in users], now)

        emitted = 0
        for user, prefs in users:
            try:
                key = digest_key(user["id"], now)
                if await self._already_sent(key):
                    continue
                insights = await self.insight_repo.get_top_recent(
                    since,
                    limit=settings.digest_insight_limit,
                    categories=prefs.content.new_insights.categories or None,
                    include_premium=user["id"] in premium_ids,
                )
                if not insights:
                    continue
                emit_weekly_digest(
                    self._bus,
                    user_id=user["id"],
                    insights=insights,
                    period_start=since,
                    period_end=now,
                    idempotency_key=key,
                )
                emitted += 1
            except Exception as e:
                log.error("scheduler_user_error", job="weekly_digest", user_id=user.get("id"), error=str(e))
        log.info("weekly_digests_sent", count=emitted, candidates=len(users))
        return emitted


class MaintenanceTasks:
    """Periodic store sweeps: record expiry, stuck-pending report, job queue hygiene."""

    def __init__(self, db_pool: asyncpg.Pool) -> None:
        self.notification_repo = NotificationRepository(db_pool)
        self.job_repo = JobRepository(db_pool)

    async def mark_expired_notifications(self, now: datetime | None = None) -> int:
        count = await self.notification_repo.mark_expired(now or utc_now())
        log.info("notifications_marked_expired", count=count)
        return count

    async def report_stuck_pending(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Log records pending longer than ``settings.stuck_pending_hours``. Reporting only."""
        now = now or utc_now()
        cutoff = now - timedelta(hours=settings.stuck_pending_hours)
        stuck = await self.notification_repo.find_stuck_pending(cutoff)
        if stuck:
            log.warning(
                "stuck_pending_notifications",
                count=len(stuck),
                oldest=stuck[0]["created_at"].isoformat() if stuck[0].get("created_at") else None,
                notification_ids=[r["id"] for r in stuck[:20]],
            )
        return stuck

    async def reset_stuck_jobs(self, now: datetime | None = None) -> int:
        count = await self.job_repo.reset_stuck_jobs(settings.stuck_job_minutes, now or utc_now())
        if count:
            log.warning("stuck_jobs_reset", count=count)
        return count

    async def cleanup_old_jobs(self, now: datetime | None = None) -> int:
        count = await self.job_repo.cleanup_old_jobs(settings.job_retention_days, now or utc_now())
        log.info("old_jobs_cleaned", count=count)
        return count

    async def cleanup_old_notifications(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        cutoff = now - timedelta(days=settings.notification_retention_days)
        count = await self.notification_repo.delete_older_than(cutoff)
        log.info("old_notifications_cleaned", count=count)
        return count
