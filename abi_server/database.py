# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database connection, session management and transactional primitives.

This module is the only place store-shaped concerns live. Services get three
primitives from it:

* a transactional scope (``get_db`` for request handlers, ``run_in_transaction``
  for background work and retry-safe ledger calls),
* an exclusive row read (``get_for_update``),
* a unique-constraint insert that reports a conflict without aborting the
  enclosing transaction (``insert_or_conflict``, via a SAVEPOINT).

Driver errors are translated into ``StoreUnavailable`` / ``StoreTimeout``.
"""

import asyncio
import logging
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import event, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from abi_server.config import settings
from abi_server.errors import StoreTimeout, StoreUnavailable
from abi_server.models.base import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

_is_sqlite = settings.database_url.startswith("sqlite")

if _is_sqlite:
    engine = create_async_engine(settings.database_url, echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works with pysqlite/aiosqlite
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        # Readers must not block a writer's commit (background sweep, tests)
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

else:
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def translate_store_error(exc: Exception) -> Exception:
    """Map driver/pool failures onto the transient error kinds. Other errors pass through."""
    if isinstance(exc, (asyncio.TimeoutError, PoolTimeoutError)):
        return StoreTimeout()
    if isinstance(exc, (OperationalError, InterfaceError)):
        return StoreUnavailable()
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StoreUnavailable()
    return exc


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI that yields a database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            translated = translate_store_error(exc)
            if translated is not exc:
                raise translated from exc
            raise
        finally:
            await session.close()


async def run_in_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    timeout: float | None = None,
    attempts: int | None = None,
) -> T:
    """Run ``operation(session)`` as one transaction on a fresh session.

    Commits on success and rolls back on any error. Only transient store
    failures are retried (bounded, with jittered backoff); ledger idempotency
    keys make the retried operation's outcome deterministic. Exceeding
    ``timeout`` aborts the transaction and raises ``StoreTimeout``.
    """
    timeout = settings.db_operation_timeout_seconds if timeout is None else timeout
    attempts = max(1, attempts or settings.db_retry_attempts)

    async def _once() -> T:
        async with async_session_maker() as session:
            try:
                result = await operation(session)
                await session.commit()
                return result
            except BaseException:
                await session.rollback()
                raise

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(_once(), timeout)
        except Exception as exc:
            translated = translate_store_error(exc)
            if isinstance(translated, StoreUnavailable) and attempt < attempts:
                delay = settings.db_retry_base_delay_seconds * (2 ** (attempt - 1))
                delay += random.uniform(0, delay)
                logger.warning("Transient store failure (attempt %d/%d), retrying", attempt, attempts)
                await asyncio.sleep(delay)
                continue
            if translated is not exc:
                raise translated from exc
            raise
    raise StoreUnavailable()


async def get_for_update(db: AsyncSession, model: type[T], ident: Any) -> T | None:
    """Load one row by primary key under an exclusive row lock (SELECT ... FOR UPDATE).

    The identity map is refreshed so the caller sees the locked row's state,
    not a stale copy loaded earlier in the session.
    """
    result = await db.execute(
        select(model)
        .where(model.id == ident)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def violates_constraint(exc: IntegrityError, name: str) -> bool:
    """True when ``exc`` was raised by the unique index or constraint called ``name``.

    PostgreSQL and SQLite both name the violated index in the driver message.
    """
    return name in str(exc.orig)


async def insert_or_conflict(db: AsyncSession, obj: Any) -> bool:
    """Insert ``obj`` inside a SAVEPOINT.

    Returns False when a unique constraint rejects the row; the enclosing
    transaction stays usable. Returns True when the row was written.
    """
    try:
        async with db.begin_nested():
            db.add(obj)
            await db.flush()
    except IntegrityError:
        return False
    return True


async def init_db() -> None:
    """Create all tables. Call at startup."""
    import abi_server.models  # noqa: F401  (register every mapper)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
