"""Background job queue backed by the jobs table.

Delivery workers (email, push, SMS, webhook transports) live outside this
project; they claim jobs here and report back through ``mark_completed`` /
``mark_failed``.
"""

import asyncpg
import orjson
import structlog
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4
from config.constants import DEFAULT_JOB_PRIORITY, JobStatus, JobType
from utils.retry import is_exhausted, next_retry_at, sanitize_error

log = structlog.get_logger(__name__)

STUCK_JOB_ERROR = "Job processing timeout - reset by system"


@dataclass
class JobSpec:
    job_type: JobType
    payload: dict[str, Any]
    priority: int = DEFAULT_JOB_PRIORITY
    max_attempts: int = 3
    scheduled_for: datetime | None = None
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.job_type = JobType(self.job_type)
        if not 0 <= self.priority <= 10:
            raise ValueError(f"job priority must be 0-10, got {self.priority}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not self.job_id:
            self.job_id = f"{self.job_type.value}-{uuid4().hex}"


def _rows_affected(result: str) -> int:
    return int(result.split()[-1])


class JobRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create_job(self, spec: JobSpec, now: datetime) -> dict[str, Any]:
        """Insert a job; an existing job with the same job_id is returned instead."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (job_id, job_type, payload, priority, max_attempts, scheduled_for, metadata)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (job_id) DO NOTHING
                RETURNING *
                """,
                spec.job_id,
                spec.job_type.value,
                spec.payload,
                spec.priority,
                spec.max_attempts,
                spec.scheduled_for or now,
                spec.metadata,
            )
            if row is None:
                row = await conn.fetchrow("SELECT * FROM jobs WHERE job_id = $1", spec.job_id)
        return dict(row)

    async def create_bulk_jobs(self, specs: Iterable[JobSpec], now: datetime) -> list[str]:
        """Insert many jobs in one statement, skipping duplicate job_ids. Returns inserted ids."""
        specs = list(specs)
        if not specs:
            return []
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                INSERT INTO jobs (job_id, job_type, payload, priority, max_attempts, scheduled_for, metadata)
                SELECT j.job_id, j.job_type, j.payload::jsonb, j.priority, j.max_attempts,
                       j.scheduled_for, j.metadata::jsonb
                FROM unnest($1::text[], $2::text[], $3::text[], $4::int[], $5::int[],
                            $6::timestamptz[], $7::text[])
                     AS j(job_id, job_type, payload, priority, max_attempts, scheduled_for, metadata)
                ON CONFLICT (job_id) DO NOTHING
                RETURNING job_id
                """,
                [s.job_id for s in specs],
                [s.job_type.value for s in specs],
                [orjson.dumps(s.payload, default=str).decode() for s in specs],
                [s.priority for s in specs],
                [s.max_attempts for s in specs],
                [s.scheduled_for or now for s in specs],
                [orjson.dumps(s.metadata, default=str).decode() for s in specs],
            )
        return [r["job_id"] for r in rows]

    async def claim_next(
        self,
        now: datetime,
        job_types: Iterable[JobType] | None = None,
        worker_id: str = "worker",
    ) -> dict[str, Any] | None:
        """Claim the highest-priority due job and move it to processing."""
        types = [JobType(t).value for t in job_types] if job_types else None
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs SET status = 'processing', attempts = attempts + 1,
                    started_at = $3, worker_id = $2, updated_at = $3
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status IN ('pending', 'failed')
                      AND scheduled_for <= $3
                      AND attempts < max_attempts
                      AND ($1::text[] IS NULL OR job_type = ANY($1::text[]))
                    ORDER BY priority DESC, scheduled_for, created_at
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                types,
                worker_id,
                now,
            )
        return dict(row) if row else None

    async def mark_completed(self, job_id: str, now: datetime) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE jobs SET status = 'completed', processed_at = $2, updated_at = $2
                WHERE job_id = $1 AND status = 'processing'
                """,
                job_id,
                now,
            )
        return _rows_affected(result) == 1

    async def mark_failed(self, job_id: str, error: BaseException | str, now: datetime) -> JobStatus | None:
        """Record a failed attempt: reschedule with backoff, or dead-letter once attempts run out."""
        message = sanitize_error(error)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT attempts, max_attempts FROM jobs WHERE job_id = $1 FOR UPDATE",
                    job_id,
                )
                if row is None:
                    return None
                if is_exhausted(row["attempts"], row["max_attempts"]):
                    await conn.execute(
                        """
                        UPDATE jobs SET status = 'dead', last_error = $2,
                            processed_at = $3, updated_at = $3
                        WHERE job_id = $1
                        """,
                        job_id,
                        message,
                        now,
                    )
                    log.warning("job_dead_lettered", job_id=job_id, attempts=row["attempts"])
                    return JobStatus.DEAD
                await conn.execute(
                    """
                    UPDATE jobs SET status = 'failed', last_error = $2,
                        scheduled_for = $3, updated_at = $4
                    WHERE job_id = $1
                    """,
                    job_id,
                    message,
                    next_retry_at(row["attempts"], now),
                    now,
                )
        return JobStatus.FAILED

    async def reset_stuck_jobs(self, threshold_minutes: int, now: datetime) -> int:
        """Return jobs stuck in processing to failed, or dead once their attempts are spent."""
        cutoff = now - timedelta(minutes=threshold_minutes)
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE jobs SET
                    status = CASE WHEN attempts >= max_attempts THEN 'dead' ELSE 'failed' END,
                    last_error = $2, updated_at = $3
                WHERE status = 'processing' AND started_at <= $1
                """,
                cutoff,
                STUCK_JOB_ERROR,
                now,
            )
        return _rows_affected(result)

    async def cleanup_old_jobs(self, retention_days: int, now: datetime) -> int:
        cutoff = now - timedelta(days=retention_days)
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM jobs WHERE status = 'completed' AND processed_at <= $1",
                cutoff,
            )
        return _rows_affected(result)

    async def get_stats(self, job_type: JobType | None = None) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS count FROM jobs
                WHERE ($1::text IS NULL OR job_type = $1)
                GROUP BY status
                """,
                JobType(job_type).value if job_type else None,
            )
        stats = {"total": 0, **{s.value: 0 for s in JobStatus}}
        for row in rows:
            stats[row["status"]] = row["count"]
            stats["total"] += row["count"]
        return stats
