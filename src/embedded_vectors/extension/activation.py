"""Register the ``vectors`` extension with a running server.

Activation is two-phase: :func:`configure_extension` persists the preload and
search-path settings with ``ALTER SYSTEM``, which only take effect after a full
server restart; :func:`enable_extension` then runs ``CREATE EXTENSION`` once
the restarted server has the library loaded.
"""

from __future__ import annotations

import logging

import asyncpg

from embedded_vectors.errors import ExtensionAlreadyEnabledError, SqlError, sql_error
from embedded_vectors.postgres.pool import DatabasePool


logger = logging.getLogger(__name__)

EXTENSION_NAME = "vectors"
PRELOAD_STATEMENT = "ALTER SYSTEM SET shared_preload_libraries = 'vectors.so'"
SEARCH_PATH_STATEMENT = 'ALTER SYSTEM SET search_path = "$user", public, vectors'
CREATE_STATEMENT = "CREATE EXTENSION vectors"
ENABLED_QUERY = "SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = $1)"

# duplicate_object
DUPLICATE_OBJECT = "42710"


async def configure_extension(conn: asyncpg.Connection) -> None:
    """Persist server-wide settings for the extension. Requires a restart."""

    for description, statement in (
        ("Adding extension to shared_preload_libraries", PRELOAD_STATEMENT),
        ("Adding extension to search_path", SEARCH_PATH_STATEMENT),
    ):
        logger.info(description)
        try:
            await conn.execute(statement)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise sql_error(exc, statement) from exc


async def enable_extension(pool: DatabasePool) -> None:
    try:
        await pool.execute(CREATE_STATEMENT)
    except SqlError as exc:
        if exc.sqlstate == DUPLICATE_OBJECT:
            raise ExtensionAlreadyEnabledError(
                f"Extension '{EXTENSION_NAME}' is already enabled in database '{pool.database}'",
                sqlstate=exc.sqlstate,
            ) from exc
        raise
    logger.info("Extension '%s' enabled in database '%s'", EXTENSION_NAME, pool.database)


async def extension_enabled(pool: DatabasePool) -> bool:
    return bool(await pool.fetchval(ENABLED_QUERY, EXTENSION_NAME))


__all__ = [
    "CREATE_STATEMENT",
    "EXTENSION_NAME",
    "PRELOAD_STATEMENT",
    "SEARCH_PATH_STATEMENT",
    "configure_extension",
    "enable_extension",
    "extension_enabled",
]
