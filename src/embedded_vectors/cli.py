from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from embedded_vectors.errors import EmbeddedVectorsError
from embedded_vectors.extension.installer import ExtensionSettings, is_installed
from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.postgres.server import PostgreSQL
from embedded_vectors.provision import ProvisionPlan, provision
from embedded_vectors.settings import settings


logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else str(settings.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _log_error_chain(exc: BaseException) -> None:
    logger.error("%s", exc)
    cause = exc.__cause__
    while cause is not None:
        logger.error("  caused by %s: %s", type(cause).__name__, cause)
        cause = cause.__cause__


app = typer.Typer(
    help="Provision an embedded PostgreSQL server with the vectors extension.",
    no_args_is_help=True,
)


@app.command("run")
def run_cmd(
    data_dir: Path | None = typer.Option(
        None,
        "--data-dir",
        help="Storage directory for binaries, data and the password file.",
        file_okay=False,
    ),
    version: str | None = typer.Option(None, "--version", help="PostgreSQL version."),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging."),
) -> None:
    """Start the server, install the extension if needed and run the demo queries."""

    _setup_logging(verbose)
    server = ServerSettings.from_settings(settings, storage_dir=data_dir, version=version)
    plan = ProvisionPlan.from_settings(
        settings,
        server=server,
        extension=ExtensionSettings.from_settings(settings),
    )
    try:
        asyncio.run(provision(plan))
    except EmbeddedVectorsError as exc:
        _log_error_chain(exc)
        raise typer.Exit(code=1) from exc


@app.command("status")
def status_cmd(
    data_dir: Path | None = typer.Option(
        None,
        "--data-dir",
        help="Storage directory for binaries, data and the password file.",
        file_okay=False,
    ),
    version: str | None = typer.Option(None, "--version", help="PostgreSQL version."),
) -> None:
    """Show what is installed without starting anything."""

    _setup_logging(False)
    server = ServerSettings.from_settings(settings, storage_dir=data_dir, version=version)
    postgresql = PostgreSQL(server)
    try:
        server_status = asyncio.run(postgresql.detect_status())
    except EmbeddedVectorsError as exc:
        _log_error_chain(exc)
        raise typer.Exit(code=1) from exc

    table = Table(title=f"PostgreSQL {server.version}", show_header=False)
    table.add_column("Item")
    table.add_column("Value")
    table.add_row("Installation directory", str(server.installation_dir))
    table.add_row("Data directory", str(server.data_dir))
    table.add_row("Password file", str(server.password_file))
    table.add_row("Server status", server_status.value)
    table.add_row(
        "Extension installed",
        str(is_installed(server.installation_dir, server.version)),
    )
    table.add_row(
        "Extension verified",
        str(is_installed(server.installation_dir, server.version, verify=True)),
    )
    Console().print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
