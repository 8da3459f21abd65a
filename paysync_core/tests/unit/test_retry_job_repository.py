"""Unit tests for retry-job persistence and guarded transitions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paysync_core.retry import InvalidTransition, RetryStatus
from paysync_core.state.repository import RetryJobRepository


async def _create(repo: RetryJobRepository, invoice_id: str = "inv_1", *, retry_at: datetime | None = None):
    return await repo.create(
        tenant_id="T1",
        invoice_id=invoice_id,
        processor_customer_id="cus_1",
        payment_method_id="pm_1",
        amount=5000,
        currency="USD",
        retry_at=retry_at or datetime.now(UTC) - timedelta(seconds=1),
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_new_job_is_pending_attempt_one(self, async_session: AsyncSession) -> None:
        job = await _create(RetryJobRepository(async_session))
        assert job.status == "pending"
        assert job.attempt_number == 1
        assert job.currency == "usd"

    @pytest.mark.asyncio
    async def test_one_active_job_per_invoice(self, async_session: AsyncSession) -> None:
        """The partial unique index rejects a second active job."""
        repo = RetryJobRepository(async_session)
        await _create(repo)
        with pytest.raises(IntegrityError):
            await _create(repo)

    @pytest.mark.asyncio
    async def test_new_job_allowed_after_terminal(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        first = await _create(repo)
        assert await repo.cancel_pending("inv_1") == 1
        second = await _create(repo)
        assert second.id != first.id
        assert (await repo.get_active_for_invoice("inv_1")).id == second.id


class TestDueSelection:
    @pytest.mark.asyncio
    async def test_list_due_respects_retry_at_and_limit(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        now = datetime.now(UTC)
        early = await _create(repo, "inv_a", retry_at=now - timedelta(minutes=2))
        later = await _create(repo, "inv_b", retry_at=now - timedelta(minutes=1))
        await _create(repo, "inv_c", retry_at=now + timedelta(minutes=5))

        due = await repo.list_due(now, limit=10)
        assert [j.id for j in due] == [early.id, later.id]
        assert len(await repo.list_due(now, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_claimed_jobs_are_not_due(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        assert await repo.claim(job.id) is True
        assert await repo.list_due(datetime.now(UTC), limit=10) == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_claim_only_once(self, async_session: AsyncSession) -> None:
        """The second claimant loses the guarded update."""
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        assert await repo.claim(job.id) is True
        assert await repo.claim(job.id) is False
        refreshed = await repo.get(job.id)
        assert refreshed.status == "processing"
        assert refreshed.started_at is not None

    @pytest.mark.asyncio
    async def test_terminal_transition_sets_completed_at(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        await repo.claim(job.id)
        assert await repo.transition(job.id, RetryStatus.PROCESSING, RetryStatus.FAILED, last_error="declined")
        refreshed = await repo.get(job.id)
        assert refreshed.status == "failed"
        assert refreshed.completed_at is not None
        assert refreshed.last_error == "declined"

    @pytest.mark.asyncio
    async def test_illegal_edge_raises(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        with pytest.raises(InvalidTransition):
            await repo.transition(job.id, RetryStatus.PENDING, RetryStatus.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_cancel_only_touches_pending(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        await repo.claim(job.id)
        assert await repo.cancel_pending("inv_1") == 0
        assert (await repo.get(job.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_count_by_status(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        a = await _create(repo, "inv_a")
        await _create(repo, "inv_b")
        await repo.claim(a.id)
        assert await repo.count_by_status() == {"pending": 1, "processing": 1}

    @pytest.mark.asyncio
    async def test_latest_for_invoice_includes_terminal(self, async_session: AsyncSession) -> None:
        repo = RetryJobRepository(async_session)
        job = await _create(repo)
        await repo.cancel_pending("inv_1")
        latest = await repo.latest_for_invoice("inv_1")
        assert latest.id == job.id
        assert await repo.get_active_for_invoice("inv_1") is None
