"""Subscription lookups for reminders and premium visibility."""

import asyncpg
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from config.constants import PREMIUM_TIER

SUBSCRIPTION_COLUMNS = """
    s.id, s.user_id, s.tier, s.status, s.start_date, s.end_date, s.auto_renew,
    u.email, u.name, u.is_active
"""


class SubscriptionRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, subscription_id: str) -> dict[str, Any] | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {SUBSCRIPTION_COLUMNS}
                FROM subscriptions s JOIN users u ON u.id = s.user_id
                WHERE s.id = $1
                """,
                subscription_id,
            )
        return dict(row) if row else None

    async def find_ending_between(
        self,
        start: datetime,
        end: datetime,
        statuses: Iterable[str] = ("active",),
        tier: str = PREMIUM_TIER,
    ) -> list[dict[str, Any]]:
        """Subscriptions of ``tier`` in ``statuses`` whose end_date falls in [start, end)."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SUBSCRIPTION_COLUMNS}
                FROM subscriptions s JOIN users u ON u.id = s.user_id
                WHERE s.end_date >= $1 AND s.end_date < $2
                  AND s.status = ANY($3::text[])
                  AND s.tier = $4
                  AND u.is_active
                ORDER BY s.end_date
                """,
                start,
                end,
                list(statuses),
                tier,
            )
        return [dict(r) for r in rows]

    async def premium_user_ids(self, user_ids: Iterable[str], now: datetime) -> set[str]:
        """Which of ``user_ids`` currently hold an active premium subscription."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return set()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT user_id FROM subscriptions
                WHERE user_id = ANY($1::text[])
                  AND tier = $2
                  AND status IN ('active', 'trial')
                  AND (end_date IS NULL OR end_date > $3)
                """,
                ids,
                PREMIUM_TIER,
                now,
            )
        return {r["user_id"] for r in rows}
