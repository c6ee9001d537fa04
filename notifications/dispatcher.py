"""Per-recipient delivery: preference gates, record creation, job fan-out."""

from datetime import datetime
from typing import Any

import asyncpg
import structlog
from config.constants import (
    CHANNEL_JOB_TYPES,
    DEFAULT_JOB_PRIORITY,
    JOB_MAX_ATTEMPTS,
    JOB_PRIORITY,
    Channel,
    ChannelStatus,
    OverallStatus,
)
from notifications.events import Event
from notifications.formatter import render
from notifications.preferences import (
    NotificationPreference,
    category_for,
    filter_channels,
    record_send,
    user_zone,
)
from notifications.types import ChannelState, NotificationRecord
from storage.repositories.job_repo import JobRepository, JobSpec
from storage.repositories.notification_repo import NotificationRepository
from storage.repositories.preference_repo import PreferenceRepository
from utils.retry import sanitize_error
from utils.time_utils import next_local_midnight, utc_now

log = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Turn one (event, recipient) pair into a notification record plus delivery jobs."""

    def __init__(self, db_pool: asyncpg.Pool) -> None:
        self._pool = db_pool
        self.preference_repo = PreferenceRepository(db_pool)
        self.notification_repo = NotificationRepository(db_pool)
        self.job_repo = JobRepository(db_pool)

    async def send_to_user(
        self, event: Event, user: dict[str, Any], now: datetime | None = None
    ) -> NotificationRecord | None:
        """Run the delivery pipeline for one recipient.

        Returns the created record, or None when nothing was created (unmapped
        event type, or every requested channel filtered out).
        """
        now = now or utc_now()
        user_id = str(user["id"])

        mapping = category_for(event.event_type)
        if mapping is None:
            log.info("notification_unmapped_event", event_type=event.name, user_id=user_id)
            return None
        category, notification_type = mapping

        prefs = await self.preference_repo.get_or_create_for_user(user_id)
        candidates = filter_channels(
            prefs, category, notification_type, event.channels, event.priority, now
        )
        enabled = await self._reserve_daily_slots(prefs, candidates, now)
        if not enabled:
            log.info(
                "notification_skipped_no_channels",
                event_type=event.name,
                user_id=user_id,
                requested=[c.value for c in event.channels],
            )
            return None

        content = render(event.event_type, event.payload, user)
        record = NotificationRecord(
            recipient_id=user_id,
            event_type=event.name,
            priority=event.priority,
            title=content.title,
            body=content.body,
            rich_content=content.rich_content,
            channels={ch: ChannelState(enabled=ch in enabled) for ch in event.channels},
            metadata={
                "event_id": event.event_id,
                "source": event.metadata.source,
                "category": category.value,
                "notification_type": notification_type,
                "enabled_channels": [c.value for c in enabled],
                "event_data": event.payload,
                **event.metadata.extra,
            },
            idempotency_key=event.metadata.idempotency_key,
            expires_at=event.metadata.expires_at,
        )
        try:
            record = await self.notification_repo.create(record)
        except Exception:
            await self._release_daily_slots(prefs, enabled, now)
            raise
        log.info(
            "notification_created",
            notification_id=record.id,
            user_id=user_id,
            event_type=event.name,
            channels=[c.value for c in enabled],
        )

        await self._dispatch_channels(record, event, now)
        return record

    async def _reserve_daily_slots(
        self, prefs: NotificationPreference, channels: list[Channel], now: datetime
    ) -> list[Channel]:
        """Take one slot of each capped channel's daily budget; drop channels that are full."""
        granted: list[Channel] = []
        next_reset = next_local_midnight(user_zone(prefs), now)
        for channel in channels:
            limit = prefs.daily_limits.get(channel).max
            if limit is not None:
                ok = await self.preference_repo.reserve_daily_slot(
                    prefs.user_id, channel, limit, next_reset, now
                )
                if not ok:
                    log.info("daily_limit_reached", user_id=prefs.user_id, channel=channel.value)
                    continue
            record_send(prefs, channel, now)
            granted.append(channel)
        return granted

    async def _release_daily_slots(
        self, prefs: NotificationPreference, channels: list[Channel], now: datetime
    ) -> None:
        for channel in channels:
            if prefs.daily_limits.get(channel).max is None:
                continue
            try:
                await self.preference_repo.release_daily_slot(prefs.user_id, channel, now)
            except Exception as e:
                log.error("daily_slot_release_failed", user_id=prefs.user_id, channel=channel.value, error=str(e))

    async def _dispatch_channels(self, record: NotificationRecord, event: Event, now: datetime) -> None:
        enabled = record.enabled_channels

        if Channel.IN_APP in enabled:
            moved = await self.notification_repo.transition_channel(
                record.id, Channel.IN_APP, [ChannelStatus.PENDING], ChannelStatus.UNREAD, now
            )
            if moved:
                record.channels[Channel.IN_APP].status = ChannelStatus.UNREAD
                record.channels[Channel.IN_APP].sent_at = now

        specs = [
            JobSpec(
                job_type=CHANNEL_JOB_TYPES[ch],
                payload={"notification_id": record.id, "user_id": record.recipient_id, "channel": ch.value},
                priority=JOB_PRIORITY.get(event.priority, DEFAULT_JOB_PRIORITY),
                max_attempts=JOB_MAX_ATTEMPTS[CHANNEL_JOB_TYPES[ch]],
                job_id=f"notification-{record.id}-{ch.value}",
                metadata={"event_type": event.name, "event_id": event.event_id},
            )
            for ch in enabled
            if ch in CHANNEL_JOB_TYPES
        ]
        if specs:
            try:
                job_ids = await self.job_repo.create_bulk_jobs(specs, now)
                log.debug("jobs_enqueued", notification_id=record.id, jobs=job_ids)
            except Exception as e:
                # Channels stay pending; the stuck-pending report surfaces them
                log.error(
                    "job_enqueue_failed",
                    notification_id=record.id,
                    channels=[s.payload["channel"] for s in specs],
                    error=str(e),
                )

        status = await self.notification_repo.refresh_overall_status(record.id, now)
        if status is not None:
            record.overall_status = status

    async def apply_delivery_result(
        self,
        notification_id: int,
        channel: Channel | str,
        succeeded: bool,
        error: BaseException | str | None = None,
        now: datetime | None = None,
    ) -> OverallStatus | None:
        """Record a job worker's final outcome for one channel and refresh the overall status.

        Returns the new overall status, or None when the transition did not
        apply (unknown record, channel not enabled, or already delivered).
        """
        channel = Channel(channel)
        if channel == Channel.IN_APP:
            raise ValueError("in-app delivery is not reported by job workers")
        now = now or utc_now()
        target = ChannelStatus.SENT if succeeded else ChannelStatus.FAILED
        moved = await self.notification_repo.transition_channel(
            notification_id,
            channel,
            [ChannelStatus.PENDING, ChannelStatus.FAILED],
            target,
            now,
            error=None if succeeded else sanitize_error(error or "delivery failed"),
        )
        if not moved:
            log.warning(
                "delivery_result_ignored",
                notification_id=notification_id,
                channel=channel.value,
                succeeded=succeeded,
            )
            return None
        return await self.notification_repo.refresh_overall_status(notification_id, now)

    async def mark_in_app_read(self, notification_id: int, now: datetime | None = None) -> bool:
        """unread -> read for the in-app channel. False if it was not unread."""
        now = now or utc_now()
        moved = await self.notification_repo.transition_channel(
            notification_id, Channel.IN_APP, [ChannelStatus.UNREAD], ChannelStatus.READ, now
        )
        if moved:
            await self.notification_repo.refresh_overall_status(notification_id, now)
        return moved
