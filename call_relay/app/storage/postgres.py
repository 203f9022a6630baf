"""Postgres-backed key-value store for call state that must survive restarts."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import asyncpg

from ..config import settings
from .base import KeyValueStore

_LOGGER = logging.getLogger(__name__)

ConnectionFactory = Callable[[], contextlib.AbstractAsyncContextManager[Any]]


class PostgresKeyValueStore(KeyValueStore):
    """Stores each key as one row in a two-column table.

    Args:
        pool: asyncpg pool the store acquires connections from. A pool
            handed in here is owned by the store and closed by `aclose`.
        table_name: Backing table. Validated by settings to be a plain
            identifier before it is interpolated into SQL.
        connection_factory: Async context manager yielding an asyncpg-style
            connection. Takes precedence over ``pool``.
    """

    def __init__(
        self,
        *,
        pool: asyncpg.Pool | None = None,
        table_name: str | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        if pool is None and connection_factory is None:
            raise ValueError("PostgresKeyValueStore needs a pool or a connection factory")
        self._pool = pool
        self._table = table_name or settings.KV_TABLE_NAME
        self._connection_factory = connection_factory

    @classmethod
    async def create(
        cls,
        dsn: str | None = None,
        *,
        table_name: str | None = None,
        max_size: int = 5,
    ) -> PostgresKeyValueStore:
        """Opens a connection pool for ``dsn`` and makes sure the table exists."""
        dsn = dsn or settings.DB_CONNECTION_STRING
        if not dsn:
            raise RuntimeError("DB_CONNECTION_STRING is required for durable Postgres storage")
        _LOGGER.debug("Creating storage DB pool.")
        pool = await asyncpg.create_pool(dsn, max_size=max_size)
        store = cls(pool=pool, table_name=table_name)
        try:
            await store.ensure_schema()
        except Exception:
            await store.aclose()
            raise
        return store

    async def aclose(self) -> None:
        if self._pool is None:
            return
        _LOGGER.debug("Closing storage DB pool.")
        pool, self._pool = self._pool, None
        await pool.close()

    @contextlib.asynccontextmanager
    async def _conn(self) -> AsyncIterator[Any]:
        if self._connection_factory is not None:
            async with self._connection_factory() as conn:
                yield conn
            return
        if self._pool is None:
            raise RuntimeError("PostgresKeyValueStore is closed")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_schema(self) -> None:
        """Creates the backing table when it does not exist yet."""
        _LOGGER.debug("Ensuring key-value table exists.", extra={"table": self._table})
        async with self._conn() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    async def get(self, key: str) -> str | None:
        async with self._conn() as conn:
            return await conn.fetchval(f"SELECT value FROM {self._table} WHERE key = $1", key)

    async def set(self, key: str, value: str) -> None:
        _LOGGER.debug("Postgres store set.", extra={"key": key, "value_length": len(value)})
        async with self._conn() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self._table} (key, value, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
                """,
                key,
                value,
            )

    async def remove(self, key: str) -> None:
        _LOGGER.debug("Postgres store remove.", extra={"key": key})
        async with self._conn() as conn:
            await conn.execute(f"DELETE FROM {self._table} WHERE key = $1", key)
