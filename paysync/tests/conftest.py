"""Shared fixtures for PaySync service tests.

Services open their own sessions, so tests run against a file-backed
SQLite database per test (an in-memory database is private to a single
connection).  Seed helpers are exposed as fixtures returning coroutines.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from paysync.config import ServiceSettings
from paysync.processor_client import ProcessorClient
from paysync.services.event_intake import EventIntake
from paysync.services.event_router import EventRouter
from paysync.services.ledger_service import LedgerAccountant
from paysync_core.events.types import ProcessorEvent
from paysync_core.retry import RetryPolicy
from paysync_core.state.repository import CustomerRepository, LedgerRepository, RawEventRepository
from paysync_core.state.tables import Base, PatientTable, ProcessorCustomerTable

PLATFORM_METADATA = {"platform": "PAYSYNC"}


def _patch_columns_for_sqlite() -> None:
    """JSONB becomes JSON; tz-aware DateTime columns read back as UTC."""

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paysync.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def service_settings(monkeypatch: pytest.MonkeyPatch) -> ServiceSettings:
    for name in list(os.environ):
        if name.startswith("PAYSYNC_"):
            monkeypatch.delenv(name, raising=False)
    return ServiceSettings(_env_file=None)


@pytest.fixture
def ledger() -> LedgerAccountant:
    return LedgerAccountant(fee_percent=10)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy()


@pytest.fixture
def intake(session_factory, ledger, service_settings, retry_policy) -> EventIntake:
    return EventIntake(session_factory, EventRouter(), ledger, service_settings, retry_policy)


@pytest.fixture
def processor() -> MagicMock:
    """Processor client double; every outbound call is an ``AsyncMock``."""
    client = MagicMock(spec=ProcessorClient)
    for name in (
        "charge_off_session",
        "retrieve_customer",
        "create_customer",
        "retrieve_invoice",
        "create_invoice",
        "create_invoice_item",
        "finalize_invoice",
        "pay_invoice_out_of_band",
    ):
        setattr(client, name, AsyncMock(name=name))
    return client


# ---------------------------------------------------------------------------
# Events and seed data
# ---------------------------------------------------------------------------


def make_event(event_type: str, obj: dict[str, Any], *, event_id: str = "evt_1", created: int = 1_760_000_000):
    return ProcessorEvent(id=event_id, type=event_type, data={"object": obj}, created=created)


@pytest.fixture
def event_factory() -> Callable[..., ProcessorEvent]:
    return make_event


@pytest.fixture
def seed_customer(session_factory) -> Callable[..., Awaitable[ProcessorCustomerTable]]:
    async def _seed(
        customer_id: str = "cus_1",
        *,
        tenant_id: str = "T1",
        patient_id: str | None = None,
        email: str | None = None,
        default_payment_method_id: str | None = None,
    ) -> ProcessorCustomerTable:
        async with session_factory() as session:
            row = await CustomerRepository(session).upsert(
                {
                    "tenant_id": tenant_id,
                    "processor_customer_id": customer_id,
                    "patient_id": patient_id,
                    "email": email,
                    "default_payment_method_id": default_payment_method_id,
                }
            )
            await session.commit()
            return row

    return _seed


@pytest.fixture
def seed_patient(session_factory) -> Callable[..., Awaitable[None]]:
    async def _seed(
        patient_id: str = "P42",
        *,
        tenant_id: str = "T1",
        email: str | None = "pat@example.com",
        first_name: str | None = "Pat",
        last_name: str | None = "Jones",
    ) -> None:
        async with session_factory() as session:
            session.add(
                PatientTable(
                    patient_id=patient_id,
                    tenant_id=tenant_id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                )
            )
            await session.commit()

    return _seed


@pytest.fixture
def ledger_entries(session_factory) -> Callable[[str], Awaitable[list]]:
    async def _entries(tenant_id: str = "T1") -> list:
        async with session_factory() as session:
            return await LedgerRepository(session).list_for_tenant(tenant_id)

    return _entries


@pytest.fixture
def raw_event(session_factory) -> Callable[[str], Awaitable[Any]]:
    async def _get(event_id: str = "evt_1"):
        async with session_factory() as session:
            return await RawEventRepository(session).get(event_id)

    return _get


def invoice_payload(
    invoice_id: str = "in_1",
    *,
    customer: str = "cus_1",
    amount: int = 5000,
    metadata: dict[str, Any] | None = None,
    **fields: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "amount_due": amount,
        "amount_paid": 0,
        "amount_remaining": amount,
        "currency": "usd",
        "status": "open",
        "metadata": metadata or {},
        "status_transitions": {"paid_at": int(datetime(2026, 1, 1, tzinfo=UTC).timestamp())},
    }
    payload.update(fields)
    return payload


@pytest.fixture
def invoice_factory() -> Callable[..., dict[str, Any]]:
    return invoice_payload
