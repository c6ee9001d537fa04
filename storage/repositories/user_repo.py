"""User directory repository."""

import asyncpg
from collections.abc import Iterable
from typing import Any

USER_COLUMNS = "id, email, name, phone, role, is_active"


class UserRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_id(self, user_id: str) -> dict[str, Any] | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id
            )
        return dict(row) if row else None

    async def find_by_ids(self, user_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ANY($1::text[])", ids
            )
        return [dict(r) for r in rows]

    async def find_by_roles(
        self, roles: Iterable[str], active_only: bool = True
    ) -> list[dict[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {USER_COLUMNS} FROM users
                WHERE role = ANY($1::text[]) AND ($2 = FALSE OR is_active)
                ORDER BY id
                """,
                list(roles),
                active_only,
            )
        return [dict(r) for r in rows]

    async def upsert(
        self,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
        role: str = "user",
        is_active: bool = True,
        phone: str | None = None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (id, email, name, role, is_active, phone)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email, name = EXCLUDED.name, role = EXCLUDED.role,
                    is_active = EXCLUDED.is_active, phone = EXCLUDED.phone, updated_at = NOW()
                """,
                user_id,
                email,
                name,
                role,
                is_active,
                phone,
            )
