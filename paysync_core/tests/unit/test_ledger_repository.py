"""Unit tests for the append-only tenant ledger.

Covers:
- Running balance arithmetic for credits and debits
- Deduplication on (tenant, source, source_id, direction)
- Replay equals the stored running balance after interleaved tenants
- Advisory lock emission on PostgreSQL
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from paysync_core.state.database import advisory_lock_key
from paysync_core.state.repository import LedgerRepository


async def _append(repo: LedgerRepository, tenant: str, source_id: str, amount: int, direction: str = "credit", **kw):
    return await repo.append(
        tenant_id=tenant,
        source=kw.pop("source", "payment"),
        source_id=source_id,
        amount=amount,
        currency="usd",
        direction=direction,
        **kw,
    )


class TestAppend:
    @pytest.mark.asyncio
    async def test_credit_then_debit(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)
        first, created = await _append(repo, "T1", "in_1", 4500)
        assert created is True
        assert first.running_balance == 4500

        second, _ = await _append(repo, "T1", "re_1", 1000, "debit", source="refund")
        assert second.running_balance == 3500

    @pytest.mark.asyncio
    async def test_duplicate_source_returns_existing(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)
        entry, _ = await _append(repo, "T1", "in_1", 4500)
        again, created = await _append(repo, "T1", "in_1", 4500)
        assert created is False
        assert again.id == entry.id
        assert len(await repo.list_for_tenant("T1")) == 1

    @pytest.mark.asyncio
    async def test_same_source_opposite_direction_is_distinct(self, async_session: AsyncSession) -> None:
        """A dispute debit and its won credit share a source id."""
        repo = LedgerRepository(async_session)
        await _append(repo, "T1", "in_1", 5000)
        await _append(repo, "T1", "dp_1", 5000, "debit", source="dispute")
        last, created = await _append(repo, "T1", "dp_1", 5000, "credit", source="dispute")
        assert created is True
        assert last.running_balance == 5000

    @pytest.mark.asyncio
    async def test_balance_may_go_negative(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)
        entry, _ = await _append(repo, "T1", "dp_1", 700, "debit", source="dispute")
        assert entry.running_balance == -700

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"source": "bonus"},
            {"direction": "sideways"},
            {"amount": -1},
        ],
    )
    async def test_invalid_input_rejected(self, async_session: AsyncSession, kwargs: dict) -> None:
        repo = LedgerRepository(async_session)
        params = {"source": "payment", "direction": "credit", "amount": 10, **kwargs}
        with pytest.raises(ValueError):
            await repo.append(
                tenant_id="T1",
                source_id="x",
                currency="usd",
                **params,
            )

    @pytest.mark.asyncio
    async def test_occurred_at_never_moves_backwards(self, async_session: AsyncSession) -> None:
        repo = LedgerRepository(async_session)
        later = datetime.now(UTC) + timedelta(hours=1)
        await _append(repo, "T1", "a", 100, occurred_at=later)
        entry, _ = await _append(repo, "T1", "b", 100, occurred_at=later - timedelta(hours=2))
        assert entry.occurred_at >= later
        latest = await repo.latest("T1")
        assert latest.source_id == "b"
        assert latest.running_balance == 200


class TestLedgerIntegrity:
    @pytest.mark.asyncio
    async def test_replay_matches_running_balance_across_interleaved_tenants(
        self, async_session: AsyncSession
    ) -> None:
        repo = LedgerRepository(async_session)
        rng = random.Random(42)
        ops = [
            (tenant, f"{tenant}-{i}", rng.randint(1, 10_000), rng.choice(["credit", "debit"]))
            for tenant in ("T1", "T2", "T3")
            for i in range(20)
        ]
        rng.shuffle(ops)
        for tenant, source_id, amount, direction in ops:
            await _append(repo, tenant, source_id, amount, direction)

        for tenant in await repo.tenant_ids():
            entries = await repo.list_for_tenant(tenant)
            replayed = 0
            for entry in entries:
                replayed += entry.amount if entry.direction == "credit" else -entry.amount
                assert replayed == entry.running_balance
            assert replayed == (await repo.latest(tenant)).running_balance

        assert await repo.tenant_ids() == ["T1", "T2", "T3"]


class TestAdvisoryLock:
    def test_lock_key_is_stable_and_namespaced(self) -> None:
        assert advisory_lock_key("ledger", "T1") == advisory_lock_key("ledger", "T1")
        assert advisory_lock_key("ledger", "T1") != advisory_lock_key("ledger", "T2")
        assert advisory_lock_key("ledger", "T1") != advisory_lock_key("audit_chain", "T1")
        assert -(2**63) <= advisory_lock_key("ledger", "T1") < 2**63

    @pytest.mark.asyncio
    async def test_postgres_append_takes_tenant_lock_first(self) -> None:
        """On PostgreSQL the first statement is pg_advisory_xact_lock for the tenant."""
        session = AsyncMock()
        bind = MagicMock()
        bind.dialect.name = "postgresql"
        session.get_bind = MagicMock(return_value=bind)
        session.add = MagicMock()

        empty = MagicMock()
        empty.scalar_one_or_none.return_value = None
        session.execute.return_value = empty

        await LedgerRepository(session).append(
            tenant_id="T1",
            source="payment",
            source_id="in_1",
            amount=4500,
            currency="usd",
            direction="credit",
        )

        first_call = session.execute.call_args_list[0]
        assert "pg_advisory_xact_lock" in str(first_call.args[0])
        assert first_call.args[1] == {"lock_id": advisory_lock_key("ledger", "T1")}
        added = session.add.call_args.args[0]
        assert added.running_balance == 4500
