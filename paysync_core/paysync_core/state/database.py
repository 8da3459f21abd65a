"""Engines, sessions and cross-process locks for the PaySync state store.

The URL scheme picks the backend: ``postgresql+asyncpg://`` in production,
``sqlite+aiosqlite://`` for local runs and tests (see
:mod:`paysync_core.state.sqlite_adapter`).

Ledger appends and audit-chain writes for one tenant are serialised with
transaction-scoped PostgreSQL advisory locks, so several worker processes
can share a database without interleaving a tenant's running balance.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

# Server-side limits for every pooled PostgreSQL connection (milliseconds).
_PG_SERVER_SETTINGS = {
    "statement_timeout": "30000",
    "lock_timeout": "10000",
}

# One sessionmaker per engine; the factory keeps its engine alive, so the
# id() key cannot be reused while the entry exists.
_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) URL.
    pool_size, max_overflow:
        Connection pool bounds; ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from paysync_core.state.sqlite_adapter import get_local_engine, path_from_url

        return get_local_engine(path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"server_settings": _PG_SERVER_SETTINGS},
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessionmaker bound to *engine*; objects stay usable after commit."""
    try:
        return _factories[id(engine)]
    except KeyError:
        factory = _factories[id(engine)] = async_sessionmaker(engine, expire_on_commit=False)
        return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with session_factory(engine)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect *session* is bound to (``postgresql``, ``sqlite``)."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def advisory_lock_key(namespace: str, key: str) -> int:
    """Stable signed 64-bit key for ``pg_advisory_xact_lock``.

    Python's ``hash()`` is salted per process, so the key is derived from a
    SHA-256 digest instead; every worker process maps a tenant to the same
    lock.
    """
    digest = hashlib.sha256(f"{namespace}:{key}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def acquire_xact_lock(session: AsyncSession, namespace: str, key: str) -> None:
    """Take a transaction-scoped advisory lock on PostgreSQL.

    Released automatically on commit or rollback.  A no-op on SQLite,
    which serialises writers at the database level.
    """
    if "postgresql" not in dialect_name(session):
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:lock_id)"),
        {"lock_id": advisory_lock_key(namespace, key)},
    )
