"""Read-only insight queries for digests."""

import asyncpg
from datetime import datetime
from typing import Any


class InsightRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_top_recent(
        self,
        since: datetime,
        limit: int = 10,
        categories: list[str] | None = None,
        include_premium: bool = True,
    ) -> list[dict[str, Any]]:
        """Published insights since ``since``, highest engagement first."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, title, excerpt, type, category, cover_image,
                       view_count, like_count, published_at
                FROM insights
                WHERE status = 'published'
                  AND published_at >= $1
                  AND ($2::text[] IS NULL OR category = ANY($2::text[]))
                  AND ($3 OR type = 'free')
                ORDER BY like_count * 5 + view_count DESC, published_at DESC
                LIMIT $4
                """,
                since,
                categories or None,
                include_premium,
                limit,
            )
        return [dict(r) for r in rows]
