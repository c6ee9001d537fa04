"""Notification preference documents and daily send counters."""

import asyncpg
import structlog
from datetime import datetime
from typing import Any
from config.constants import DEFAULT_DAILY_LIMITS, Channel
from notifications.preferences import Category, NotificationPreference, merge_settings

log = structlog.get_logger(__name__)


def _rows_affected(result: str) -> int:
    return int(result.split()[-1])


def _with_counters(
    document: dict[str, Any] | None, counters: list[dict[str, Any]]
) -> dict[str, Any]:
    """Fold counter rows into the document's daily_limits section.

    A channel with a counter but no stored entry keeps its default cap.
    """
    doc = dict(document or {})
    limits = {ch: dict(v) for ch, v in (doc.get("daily_limits") or {}).items()}
    for row in counters:
        entry = limits.setdefault(row["channel"], {"max": DEFAULT_DAILY_LIMITS[Channel(row["channel"])]})
        entry["sent_today"] = row["sent_today"]
        entry["reset_at"] = row["reset_at"]
    if limits:
        doc["daily_limits"] = limits
    return doc


class PreferenceRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_or_create_for_user(self, user_id: str) -> NotificationPreference:
        """Load a user's preferences, inserting the defaults on first use."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT settings FROM notification_preferences WHERE user_id = $1", user_id
            )
            if row is None:
                defaults = NotificationPreference(user_id=user_id)
                await conn.execute(
                    """
                    INSERT INTO notification_preferences (user_id, settings)
                    VALUES ($1, $2) ON CONFLICT DO NOTHING
                    """,
                    user_id,
                    defaults.settings_document(),
                )
                row = await conn.fetchrow(
                    "SELECT settings FROM notification_preferences WHERE user_id = $1", user_id
                )
                if row is None:
                    return defaults
                log.debug("preferences_created", user_id=user_id)
            counters = await conn.fetch(
                """
                SELECT channel, sent_today, reset_at FROM notification_daily_counters
                WHERE user_id = $1
                """,
                user_id,
            )
        return NotificationPreference.from_document(
            user_id, _with_counters(row["settings"], [dict(c) for c in counters])
        )

    async def update_settings(self, user_id: str, changes: dict[str, Any]) -> NotificationPreference:
        """Apply a partial settings update. Raises pydantic.ValidationError on bad input."""
        current = await self.get_or_create_for_user(user_id)
        updated = merge_settings(current, changes)
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE notification_preferences SET settings = $2, updated_at = NOW()
                WHERE user_id = $1
                """,
                user_id,
                updated.settings_document(),
            )
        log.info("preferences_updated", user_id=user_id, sections=sorted(changes))
        return updated

    async def reserve_daily_slot(
        self,
        user_id: str,
        channel: Channel,
        limit: int | None,
        next_reset: datetime,
        now: datetime,
    ) -> bool:
        """Atomically count one send against the channel's daily cap.

        The counter resets when its ``reset_at`` has passed. Returns False, and
        leaves the counter untouched, when the cap is already reached.
        """
        if limit is None:
            return True
        if limit <= 0:
            return False
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notification_daily_counters AS c (user_id, channel, sent_today, reset_at)
                VALUES ($1, $2, 1, $4)
                ON CONFLICT (user_id, channel) DO UPDATE SET
                    sent_today = CASE WHEN c.reset_at <= $5 THEN 1 ELSE c.sent_today + 1 END,
                    reset_at = CASE WHEN c.reset_at <= $5 THEN EXCLUDED.reset_at ELSE c.reset_at END
                WHERE c.reset_at <= $5 OR c.sent_today < $3
                RETURNING sent_today
                """,
                user_id,
                Channel(channel).value,
                limit,
                next_reset,
                now,
            )
        return row is not None

    async def release_daily_slot(self, user_id: str, channel: Channel, now: datetime) -> bool:
        """Give back a slot taken by ``reserve_daily_slot`` within the current window."""
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE notification_daily_counters
                SET sent_today = sent_today - 1
                WHERE user_id = $1 AND channel = $2 AND sent_today > 0 AND reset_at > $3
                """,
                user_id,
                Channel(channel).value,
                now,
            )
        return _rows_affected(result) > 0

    async def find_users_opted_into(
        self, category: Category, notification_type: str
    ) -> list[tuple[dict[str, Any], NotificationPreference]]:
        """Active users whose preferences enable ``category.notification_type``.

        Users with no stored document get the defaults, so they are included
        whenever the default for that type is enabled.
        """
        path = [Category(category).value, notification_type, "enabled"]
        default_enabled = NotificationPreference(user_id="").type_preference(
            category, notification_type
        ).enabled
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT u.id, u.email, u.name, u.role, u.is_active, u.phone, p.settings
                FROM users u
                LEFT JOIN notification_preferences p ON p.user_id = u.id
                WHERE u.is_active
                  AND COALESCE((p.settings #>> $1::text[])::boolean, $2)
                ORDER BY u.id
                """,
                path,
                default_enabled,
            )
        result = []
        for row in rows:
            data = dict(row)
            settings_doc = data.pop("settings", None)
            result.append((data, NotificationPreference.from_document(data["id"], settings_doc)))
        return result
