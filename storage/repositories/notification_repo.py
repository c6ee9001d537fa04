"""Notification record store.

Status changes are conditional updates on the stored JSON document so that
concurrent workers and processes never overwrite each other's transitions.
"""

import asyncpg
import structlog
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from config.constants import Channel, ChannelStatus, OverallStatus
from notifications.types import (
    NotificationRecord,
    channels_from_json,
    channels_to_json,
    derive_overall_status,
)

log = structlog.get_logger(__name__)

OVERALL_STATUS_RETRIES = 3


def _rows_affected(result: str) -> int:
    return int(result.split()[-1])


class NotificationRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, record: NotificationRecord) -> NotificationRecord:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications (
                    recipient_id, event_type, priority, title, body, rich_content,
                    channels, overall_status, metadata, idempotency_key, expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING id, created_at, updated_at
                """,
                record.recipient_id,
                record.event_type,
                record.priority.value,
                record.title,
                record.body,
                record.rich_content.to_dict(),
                channels_to_json(record.channels),
                record.overall_status.value,
                record.metadata,
                record.idempotency_key,
                record.expires_at,
            )
        record.id = row["id"]
        record.created_at = row["created_at"]
        record.updated_at = row["updated_at"]
        return record

    async def get(self, notification_id: int) -> NotificationRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM notifications WHERE id = $1", notification_id)
        return NotificationRecord.from_row(dict(row)) if row else None

    async def transition_channel(
        self,
        notification_id: int,
        channel: Channel,
        from_statuses: Iterable[ChannelStatus],
        to_status: ChannelStatus,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        """Compare-and-set one channel's status. False if the channel was not in ``from_statuses``."""
        channel = Channel(channel)
        patch: dict[str, Any] = {"status": ChannelStatus(to_status).value, "error": error}
        if to_status in (ChannelStatus.SENT, ChannelStatus.UNREAD):
            patch["sent_at"] = now.isoformat()
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE notifications
                SET channels = jsonb_set(channels, ARRAY[$2::text], (channels -> $2) || $4::jsonb),
                    updated_at = $5
                WHERE id = $1
                  AND (channels -> $2 ->> 'enabled')::boolean
                  AND channels -> $2 ->> 'status' = ANY($3::text[])
                """,
                notification_id,
                channel.value,
                [ChannelStatus(s).value for s in from_statuses],
                patch,
                now,
            )
        return _rows_affected(result) == 1

    async def refresh_overall_status(self, notification_id: int, now: datetime) -> OverallStatus | None:
        """Recompute the overall status from the stored channels and persist it.

        The write only lands if the channels document is unchanged since it was
        read; on a lost race the read/derive/write cycle is retried.
        """
        for _ in range(OVERALL_STATUS_RETRIES):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT channels, overall_status FROM notifications WHERE id = $1",
                    notification_id,
                )
                if row is None:
                    return None
                if row["overall_status"] == OverallStatus.EXPIRED.value:
                    return OverallStatus.EXPIRED
                status = derive_overall_status(channels_from_json(row["channels"]))
                result = await conn.execute(
                    """
                    UPDATE notifications SET overall_status = $2, updated_at = $4
                    WHERE id = $1 AND channels = $3 AND overall_status <> 'expired'
                    """,
                    notification_id,
                    status.value,
                    row["channels"],
                    now,
                )
            if _rows_affected(result) == 1:
                return status
        log.warning("overall_status_contended", notification_id=notification_id)
        return None

    async def mark_expired(self, now: datetime) -> int:
        """Expire pending records whose expires_at has passed. Returns the count."""
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE notifications SET overall_status = 'expired', updated_at = $1
                WHERE overall_status = 'pending' AND expires_at IS NOT NULL AND expires_at <= $1
                """,
                now,
            )
        return _rows_affected(result)

    async def get_unread_for_user(self, user_id: str, limit: int = 50) -> list[NotificationRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                WHERE recipient_id = $1
                  AND (channels -> 'in_app' ->> 'enabled')::boolean
                  AND channels -> 'in_app' ->> 'status' = 'unread'
                ORDER BY created_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [NotificationRecord.from_row(dict(r)) for r in rows]

    async def count_unread_for_user(self, user_id: str) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM notifications
                WHERE recipient_id = $1 AND channels -> 'in_app' ->> 'status' = 'unread'
                """,
                user_id,
            )

    async def get_history_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        event_type: str | None = None,
        status: OverallStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[list[NotificationRecord], int]:
        """One page of a user's notifications, newest first, plus the total match count."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        filters = """
            recipient_id = $1
            AND ($2::text IS NULL OR event_type = $2)
            AND ($3::text IS NULL OR overall_status = $3)
            AND ($4::timestamptz IS NULL OR created_at >= $4)
            AND ($5::timestamptz IS NULL OR created_at <= $5)
        """
        args = (user_id, event_type, status.value if status else None, start, end)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM notifications WHERE {filters}
                ORDER BY created_at DESC
                LIMIT $6 OFFSET $7
                """,
                *args,
                limit,
                (page - 1) * limit,
            )
            total = await conn.fetchval(f"SELECT COUNT(*) FROM notifications WHERE {filters}", *args)
        return [NotificationRecord.from_row(dict(r)) for r in rows], total

    async def mark_all_read(self, user_id: str, now: datetime) -> int:
        """unread -> read on every enabled in-app channel of the user, then refresh each overall status."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE notifications
                SET channels = jsonb_set(channels, '{in_app,status}', '"read"'),
                    updated_at = $2
                WHERE recipient_id = $1
                  AND (channels -> 'in_app' ->> 'enabled')::boolean
                  AND channels -> 'in_app' ->> 'status' = 'unread'
                RETURNING id
                """,
                user_id,
                now,
            )
        for row in rows:
            await self.refresh_overall_status(row["id"], now)
        return len(rows)

    async def find_stuck_pending(self, older_than: datetime, limit: int = 100) -> list[dict[str, Any]]:
        """Records still pending since before ``older_than`` (e.g. lost job enqueues)."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, recipient_id, event_type, channels, created_at FROM notifications
                WHERE overall_status = 'pending' AND created_at < $1
                ORDER BY created_at
                LIMIT $2
                """,
                older_than,
                limit,
            )
        return [dict(r) for r in rows]

    async def exists_with_idempotency_key(self, key: str) -> bool:
        async with self._pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM notifications WHERE idempotency_key = $1)", key
            )
        return bool(found)

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Retention helper for external cleanup jobs; finished records only."""
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM notifications
                WHERE created_at < $1 AND overall_status IN ('sent', 'failed', 'expired')
                """,
                cutoff,
            )
        return _rows_affected(result)
