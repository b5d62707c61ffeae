"""End-to-end provisioning run: server, extension, demo."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from rich.console import Console

from embedded_vectors.demo import run_demo
from embedded_vectors.extension.activation import (
    configure_extension,
    enable_extension,
    extension_enabled,
)
from embedded_vectors.extension.installer import ExtensionSettings, install, is_installed
from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.postgres.server import PostgreSQL


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProvisionPlan:
    """Inputs of one provisioning run, resolved before anything starts."""

    server: ServerSettings
    extension: ExtensionSettings
    database: str = "test"
    pool_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        server: ServerSettings,
        extension: ExtensionSettings,
    ) -> "ProvisionPlan":
        command_timeout = settings.get("DATABASE.command_timeout")
        return cls(
            server=server,
            extension=extension,
            database=str(settings.get("DATABASE.name", "test")),
            pool_config={
                "min_size": int(settings.get("DATABASE.pool_min_size", 1)),
                "max_size": int(settings.get("DATABASE.pool_max_size", 5)),
                "command_timeout": float(command_timeout) if command_timeout else None,
            },
        )


async def provision(
    plan: ProvisionPlan,
    *,
    console: Console | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Start the server, install and activate the extension, run the demo.

    Steps run strictly in order and the first failure aborts the run. Files
    copied or settings persisted before the failure are left in place.
    """

    console = console or Console()
    server_settings = plan.server

    console.print(f"Password file: {server_settings.password_file}", highlight=False)

    logger.info("Starting PostgreSQL v%s", server_settings.version)
    async with PostgreSQL(server_settings, client=client) as postgresql:
        if not await postgresql.database_exists(plan.database):
            await postgresql.create_database(plan.database)

        pool = await postgresql.create_pool(plan.database, **plan.pool_config)
        try:
            installation_dir = server_settings.installation_dir
            logger.info("Checking if vectors extension is installed")
            if not is_installed(
                installation_dir,
                server_settings.version,
                verify=plan.extension.verify_manifest,
            ):
                logger.info("Installing vectors extension")
                await install(
                    installation_dir,
                    server_settings.version,
                    plan.extension,
                    client=client,
                )
                async with pool.acquire() as conn:
                    await configure_extension(conn)
                logger.info("Successfully set up vectors extension")

                pool = await postgresql.restart(pool)

                if await extension_enabled(pool):
                    logger.info("Vectors extension already enabled")
                else:
                    logger.info("Enabling vectors extension")
                    await enable_extension(pool)

            await run_demo(pool, console)
        finally:
            await pool.close()
