from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from embedded_vectors.errors import SqlError, StalePoolError, sql_error


logger = logging.getLogger(__name__)


class DatabasePool:
    """Connection pool for one database on the embedded server.

    A pool is bound to a single server process. Once closed, either directly
    or by :meth:`PostgreSQL.restart`, every operation raises
    :class:`StalePoolError`; callers must use the pool returned by the restart.
    """

    def __init__(
        self,
        dsn: str,
        database: str,
        *,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float | None = None,
    ) -> None:
        self.dsn = dsn
        self.database = database
        self.pool_config: dict[str, Any] = {
            "min_size": min_size,
            "max_size": max_size,
            "command_timeout": command_timeout,
        }
        self._pool: asyncpg.Pool | None = None
        self._closed = False

    async def __aenter__(self) -> "DatabasePool":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "DatabasePool":
        if self._closed:
            raise StalePoolError(f"Pool for database '{self.database}' was closed")
        if self._pool is not None:
            return self
        logger.debug(
            "Creating pool for database '%s' (max size %s)",
            self.database,
            self.pool_config["max_size"],
        )
        try:
            self._pool = await asyncpg.create_pool(self.dsn, **self.pool_config)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise SqlError(
                f"Unable to connect to database '{self.database}': {exc}",
                sqlstate=getattr(exc, "sqlstate", None),
            ) from exc
        return self

    async def close(self) -> None:
        self._closed = True
        if self._pool is not None:
            try:
                await self._pool.close()
            finally:
                self._pool = None
            logger.debug("Pool for database '%s' closed", self.database)

    def _require_pool(self) -> asyncpg.Pool:
        if self._closed or self._pool is None:
            raise StalePoolError(
                f"Pool for database '{self.database}' is not open; "
                "use the pool returned by the last restart"
            )
        return self._pool

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = self._require_pool()
        async with pool.acquire() as connection:
            yield connection

    async def execute(self, query: str, *args: Any) -> str:
        pool = self._require_pool()
        try:
            return await pool.execute(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise sql_error(exc, query) from exc

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = self._require_pool()
        try:
            return await pool.fetch(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise sql_error(exc, query) from exc

    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        pool = self._require_pool()
        try:
            return await pool.fetchval(query, *args, column=column)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise sql_error(exc, query) from exc


__all__ = ["DatabasePool"]
