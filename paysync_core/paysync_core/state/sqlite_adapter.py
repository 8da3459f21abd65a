"""Local SQLite backend.

Selected by a ``sqlite+aiosqlite://`` database URL.  The ORM tables are
the same as on PostgreSQL; what changes locally:

* the schema is created with ``create_all`` at startup instead of Alembic;
* the per-tenant advisory locks are no-ops, the database file has a
  single writer;
* the busy timeout lets concurrent sessions of one process (the worker
  pool, the sweepers) queue for that writer instead of failing.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

MEMORY = ":memory:"
DEFAULT_PATH = Path(".paysync") / "state.db"

_URL_PREFIX = "sqlite+aiosqlite://"

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def path_from_url(database_url: str) -> Path | str:
    """Database file named by a SQLite URL, or ``MEMORY``.

    ``sqlite+aiosqlite:///state.db`` is relative to the working directory,
    ``sqlite+aiosqlite:////var/lib/paysync.db`` is absolute, and a URL
    without a path is an in-memory database.
    """
    _, _, path = database_url.partition(":///")
    if not path or path == MEMORY:
        return MEMORY
    return Path(path)


def _apply_pragmas(dbapi_conn, _record) -> None:  # noqa: ANN001
    cursor = dbapi_conn.cursor()
    for pragma in _PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_local_engine(db_path: Path | str = DEFAULT_PATH) -> AsyncEngine:
    """Build an aiosqlite engine for *db_path*.

    Parent directories of a file database are created on demand; pass
    ``":memory:"`` for a throwaway database.
    """
    if db_path == MEMORY:
        url = f"{_URL_PREFIX}/{MEMORY}"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"{_URL_PREFIX}/{path}"

    engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("Using local SQLite database %s", db_path)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing tables; existing tables and rows are left alone."""
    from paysync_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Local schema ready (%d tables)", len(Base.metadata.tables))
