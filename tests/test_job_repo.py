"""Tests for storage/repositories/job_repo.py: job specs, claiming, retry and dead-lettering."""

import orjson
import pytest
from datetime import timedelta
from decimal import Decimal
from config.constants import JobStatus, JobType
from storage.repositories.job_repo import STUCK_JOB_ERROR, JobRepository, JobSpec


class TestJobSpec:
    def test_defaults(self):
        spec = JobSpec(job_type="email", payload={"to": "a@example.com"})
        assert spec.job_type is JobType.EMAIL
        assert spec.priority == 5
        assert spec.job_id.startswith("email-")

    def test_explicit_job_id_kept(self):
        assert JobSpec(JobType.PUSH, {}, job_id="notif-1-push").job_id == "notif-1-push"

    @pytest.mark.parametrize("priority", [-1, 11])
    def test_priority_range(self, priority):
        with pytest.raises(ValueError):
            JobSpec(JobType.EMAIL, {}, priority=priority)

    def test_max_attempts(self):
        with pytest.raises(ValueError):
            JobSpec(JobType.EMAIL, {}, max_attempts=0)

    def test_in_app_is_not_a_job_type(self):
        with pytest.raises(ValueError):
            JobSpec("in_app", {})


class TestJobRepository:
    @pytest.fixture
    def repo(self, fake_pool):
        return JobRepository(fake_pool)


class TestCreate(TestJobRepository):
    async def test_create_job(self, repo, fake_conn, now):
        fake_conn.fetchrow_result = {"job_id": "j1", "status": "pending"}
        job = await repo.create_job(JobSpec(JobType.SMS, {"to": "+1"}, job_id="j1"), now)
        assert job["job_id"] == "j1"
        _, args = fake_conn._fetchrow_calls[0]
        assert args[1] == "sms"
        assert args[5] == now

    async def test_duplicate_returns_existing(self, repo, fake_conn, now):
        fake_conn.fetchrow_results = [None, {"job_id": "j1", "status": "completed"}]
        job = await repo.create_job(JobSpec(JobType.SMS, {}, job_id="j1"), now)
        assert job["status"] == "completed"
        assert "SELECT * FROM jobs WHERE job_id" in fake_conn._fetchrow_calls[1][0]

    async def test_bulk(self, repo, fake_conn, now):
        later = now + timedelta(hours=1)
        specs = [
            JobSpec(JobType.EMAIL, {"n": 1}, job_id="a"),
            JobSpec(JobType.PUSH, {"n": 2}, job_id="b", scheduled_for=later, priority=9),
        ]
        fake_conn.fetch_results = [[{"job_id": "a"}]]
        assert await repo.create_bulk_jobs(specs, now) == ["a"]
        _, args = fake_conn._fetch_calls[0]
        assert args[0] == ["a", "b"]
        assert args[1] == ["email", "push"]
        assert [orjson.loads(p) for p in args[2]] == [{"n": 1}, {"n": 2}]
        assert args[3] == [5, 9]
        assert args[5] == [now, later]

    async def test_bulk_payload_with_decimal(self, repo, fake_conn, now):
        fake_conn.fetch_results = [[{"job_id": "a"}]]
        await repo.create_bulk_jobs([JobSpec(JobType.EMAIL, {"amount": Decimal("9.99")}, job_id="a")], now)
        _, args = fake_conn._fetch_calls[0]
        assert orjson.loads(args[2][0]) == {"amount": "9.99"}

    async def test_bulk_empty(self, repo, fake_conn, now):
        assert await repo.create_bulk_jobs([], now) == []
        assert fake_conn._fetch_calls == []


class TestClaimAndComplete(TestJobRepository):
    async def test_claim(self, repo, fake_conn, now):
        fake_conn.fetchrow_result = {"job_id": "a", "status": "processing", "attempts": 1}
        job = await repo.claim_next(now, job_types=[JobType.EMAIL], worker_id="w1")
        assert job["status"] == "processing"
        query, args = fake_conn._fetchrow_calls[0]
        assert "FOR UPDATE SKIP LOCKED" in query
        assert "status IN ('pending', 'failed')" in query
        assert "attempts < max_attempts" in query
        assert args == (["email"], "w1", now)

    async def test_claim_empty_queue(self, repo, now):
        assert await repo.claim_next(now) is None

    async def test_mark_completed(self, repo, fake_conn, now):
        assert await repo.mark_completed("a", now) is True
        fake_conn.execute_results = ["UPDATE 0"]
        assert await repo.mark_completed("a", now) is False


class TestMarkFailed(TestJobRepository):
    async def test_retry_with_backoff(self, repo, fake_conn, now):
        fake_conn.fetchrow_result = {"attempts": 1, "max_attempts": 3}
        assert await repo.mark_failed("a", RuntimeError("smtp down"), now) is JobStatus.FAILED
        query, args = fake_conn._execute_calls[0]
        assert "status = 'failed'" in query
        assert args == ("a", "smtp down", now + timedelta(seconds=120), now)

    async def test_dead_letter_when_exhausted(self, repo, fake_conn, now):
        fake_conn.fetchrow_result = {"attempts": 3, "max_attempts": 3}
        assert await repo.mark_failed("a", "gave up", now) is JobStatus.DEAD
        query, _ = fake_conn._execute_calls[0]
        assert "status = 'dead'" in query

    async def test_error_is_sanitised(self, repo, fake_conn, now):
        fake_conn.fetchrow_result = {"attempts": 1, "max_attempts": 3}
        await repo.mark_failed("a", "GET /send?api_key=abc123 failed", now)
        _, args = fake_conn._execute_calls[0]
        assert "abc123" not in args[1]

    async def test_unknown_job(self, repo, now):
        assert await repo.mark_failed("ghost", "x", now) is None


class TestHousekeeping(TestJobRepository):
    async def test_reset_stuck(self, repo, fake_conn, now):
        fake_conn.execute_results = ["UPDATE 2"]
        assert await repo.reset_stuck_jobs(30, now) == 2
        _, args = fake_conn._execute_calls[0]
        assert args == (now - timedelta(minutes=30), STUCK_JOB_ERROR, now)

    async def test_reset_stuck_dead_letters_spent_jobs(self, repo, fake_conn, now):
        await repo.reset_stuck_jobs(30, now)
        query, _ = fake_conn._execute_calls[0]
        assert "WHEN attempts >= max_attempts THEN 'dead' ELSE 'failed'" in query

    async def test_cleanup(self, repo, fake_conn, now):
        fake_conn.execute_results = ["DELETE 8"]
        assert await repo.cleanup_old_jobs(7, now) == 8
        _, args = fake_conn._execute_calls[0]
        assert args == (now - timedelta(days=7),)

    async def test_stats(self, repo, fake_conn):
        fake_conn.fetch_results = [[{"status": "pending", "count": 4}, {"status": "dead", "count": 1}]]
        stats = await repo.get_stats(JobType.EMAIL)
        assert stats == {"total": 5, "pending": 4, "processing": 0, "completed": 0, "failed": 0, "dead": 1}
        assert fake_conn._fetch_calls[0][1] == ("email",)
