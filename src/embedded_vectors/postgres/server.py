from __future__ import annotations

import asyncio
import enum
import logging
import shlex
import shutil
from contextlib import suppress
from pathlib import Path

import asyncpg
import httpx

from embedded_vectors.errors import (
    DatabaseAlreadyExistsError,
    DatabasePermissionError,
    EmbeddedVectorsError,
    ShutdownError,
    StartupError,
    sql_error,
)
from embedded_vectors.postgres.binaries import (
    binaries_installed,
    executable_name,
    install_binaries,
)
from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.postgres.pool import DatabasePool
from embedded_vectors.postgres.secrets import PasswordStore
from embedded_vectors.util import find_free_port


MAINTENANCE_DATABASE = "postgres"


class ServerStatus(enum.Enum):
    """Lifecycle states of an embedded server."""

    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    STOPPED = "stopped"
    STARTED = "started"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PostgreSQL:
    """Manage the lifecycle of one PostgreSQL server bound to a data directory."""

    def __init__(
        self,
        settings: ServerSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self._settings = settings
        self._client = client
        self._started = False

    async def __aenter__(self) -> "PostgreSQL":
        await self.setup()
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.stop()
        finally:
            if self._settings.temporary:
                self._remove_temporary_files()

    @property
    def settings(self) -> ServerSettings:
        return self._settings

    def url(self, database: str) -> str:
        return self._settings.url(database)

    def status(self) -> ServerStatus:
        if self._started:
            return ServerStatus.STARTED
        if not binaries_installed(self._settings):
            return ServerStatus.NOT_INSTALLED
        if not self.is_initialized():
            return ServerStatus.INSTALLED
        return ServerStatus.STOPPED

    def is_initialized(self) -> bool:
        return (self._settings.data_dir / "PG_VERSION").is_file()

    def _binary(self, name: str) -> Path:
        return self._settings.bin_dir / executable_name(name)

    async def setup(self) -> None:
        """Install binaries and initialise the data directory when needed."""

        if not binaries_installed(self._settings):
            await install_binaries(self._settings, client=self._client)

        store = PasswordStore(self._settings.password_file)
        try:
            if store.load() != self._settings.password:
                store.save(self._settings.password)
                self.logger.info("Password written to %s", self._settings.password_file)
        except OSError as exc:
            raise StartupError(
                f"Unable to write password file {self._settings.password_file}: {exc}"
            ) from exc

        if not self.is_initialized():
            await self._initdb()

    async def _initdb(self) -> None:
        data_dir = self._settings.data_dir
        try:
            data_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StartupError(f"Unable to create {data_dir.parent}: {exc}") from exc
        self.logger.info("Initialising data directory %s", data_dir)
        await self._run(
            "initdb",
            f"--pgdata={data_dir}",
            f"--username={self._settings.username}",
            "--auth=password",
            f"--pwfile={self._settings.password_file}",
            "--encoding=UTF8",
            "--locale=C",
            error=StartupError,
        )

    async def start(self) -> None:
        if self._started:
            return
        if not binaries_installed(self._settings):
            raise StartupError(
                f"PostgreSQL {self._settings.version} is not installed in "
                f"{self._settings.version_dir}; run setup() first"
            )
        if not self.is_initialized():
            raise StartupError(
                f"Data directory {self._settings.data_dir} is not initialised"
            )

        if self._settings.port == 0:
            # Chosen once so the URL stays valid across restarts.
            self._settings = self._settings.with_port(find_free_port())

        options = ["-F", "-p", str(self._settings.port)]
        for key, value in self._settings.configuration.items():
            options.extend(["-c", f"{key}={value}"])

        self.logger.info(
            "Starting PostgreSQL %s on port %s",
            self._settings.version,
            self._settings.port,
        )
        try:
            await self._run(
                "pg_ctl",
                "start",
                f"--pgdata={self._settings.data_dir}",
                f"--log={self._settings.data_dir / 'start.log'}",
                f"--options={shlex.join(options)}",
                "--wait",
                error=StartupError,
            )
        except StartupError as exc:
            # pg_ctl may have forked a postmaster before it failed or was killed.
            timed_out = isinstance(exc.__cause__, asyncio.TimeoutError)
            if timed_out or self._pid_file.is_file():
                await self._abort_start()
            raise
        self._started = True
        self.logger.info("PostgreSQL started")

    @property
    def _pid_file(self) -> Path:
        return self._settings.data_dir / "postmaster.pid"

    async def _abort_start(self) -> None:
        self.logger.warning("Stopping postmaster left behind by a failed start")
        try:
            await self._run(
                "pg_ctl",
                "stop",
                f"--pgdata={self._settings.data_dir}",
                "--mode=immediate",
                "--wait",
                error=ShutdownError,
            )
        except ShutdownError as exc:
            self.logger.warning("Unable to stop leftover postmaster: %s", exc)

    async def is_running(self) -> bool:
        """Ask ``pg_ctl status`` whether any postmaster serves the data directory."""

        if not binaries_installed(self._settings) or not self.is_initialized():
            return False
        returncode, _, _ = await self._exec(
            "pg_ctl",
            "status",
            f"--pgdata={self._settings.data_dir}",
            error=StartupError,
        )
        return returncode == 0

    async def detect_status(self) -> ServerStatus:
        """Like :meth:`status`, but also reports servers started by another process."""

        status = self.status()
        if status is ServerStatus.STOPPED and await self.is_running():
            return ServerStatus.STARTED
        return status

    async def stop(self) -> None:
        if not self._started:
            return
        self.logger.info("Stopping PostgreSQL")
        await self._run(
            "pg_ctl",
            "stop",
            f"--pgdata={self._settings.data_dir}",
            "--mode=fast",
            "--wait",
            error=ShutdownError,
        )
        self._started = False
        self.logger.info("PostgreSQL stopped")

    async def restart(
        self, pool: DatabasePool | None = None, database: str | None = None
    ) -> DatabasePool:
        """Restart the server and return a new pool.

        ``pool`` is closed before the server goes down; its connections point at
        the terminated process and must not be reused.
        """

        if database is None:
            if pool is None:
                raise ValueError("restart() needs a pool or a database name")
            database = pool.database
        pool_config = dict(pool.pool_config) if pool is not None else {}
        if pool is not None:
            await pool.close()

        await self.stop()
        await self.start()
        return await self.create_pool(database, **pool_config)

    async def create_pool(self, database: str, **pool_config) -> DatabasePool:
        pool = DatabasePool(self.url(database), database, **pool_config)
        return await pool.open()

    async def _connect(self) -> asyncpg.Connection:
        if not self._started:
            raise StartupError("PostgreSQL is not running")
        try:
            return await asyncpg.connect(
                self.url(MAINTENANCE_DATABASE), timeout=self._settings.timeout
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StartupError(f"Unable to connect to PostgreSQL: {exc}") from exc

    async def database_exists(self, name: str) -> bool:
        query = "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)"
        conn = await self._connect()
        try:
            return bool(await conn.fetchval(query, name))
        except asyncpg.PostgresError as exc:
            raise sql_error(exc, query) from exc
        finally:
            await conn.close()

    async def create_database(self, name: str) -> None:
        statement = f"CREATE DATABASE {quote_identifier(name)}"
        self.logger.info("Creating database '%s'", name)
        conn = await self._connect()
        try:
            await conn.execute(statement)
        except asyncpg.exceptions.DuplicateDatabaseError as exc:
            raise DatabaseAlreadyExistsError(f"Database '{name}' already exists") from exc
        except asyncpg.exceptions.InsufficientPrivilegeError as exc:
            raise DatabasePermissionError(
                f"Role '{self._settings.username}' may not create database '{name}'"
            ) from exc
        except asyncpg.PostgresError as exc:
            raise sql_error(exc, statement) from exc
        finally:
            await conn.close()

    async def drop_database(self, name: str) -> None:
        statement = f"DROP DATABASE IF EXISTS {quote_identifier(name)}"
        self.logger.info("Dropping database '%s'", name)
        conn = await self._connect()
        try:
            await conn.execute(statement)
        except asyncpg.exceptions.InsufficientPrivilegeError as exc:
            raise DatabasePermissionError(
                f"Role '{self._settings.username}' may not drop database '{name}'"
            ) from exc
        except asyncpg.PostgresError as exc:
            raise sql_error(exc, statement) from exc
        finally:
            await conn.close()

    def _remove_temporary_files(self) -> None:
        self.logger.info("Removing temporary data directory %s", self._settings.data_dir)
        shutil.rmtree(self._settings.data_dir, ignore_errors=True)
        self._settings.password_file.unlink(missing_ok=True)

    async def _exec(
        self, program: str, *args: str, error: type[EmbeddedVectorsError]
    ) -> tuple[int, str, str]:
        cmd = [str(self._binary(program)), *args]
        self.logger.debug("Running %s", shlex.join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise error(f"Unable to run {program}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._settings.timeout
            )
        except asyncio.TimeoutError as exc:
            with suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise error(
                f"{program} did not finish within {self._settings.timeout:g}s"
            ) from exc

        out_text = stdout.decode("utf-8", errors="replace") if stdout else ""
        err_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        for line in (out_text + err_text).splitlines():
            if line.strip():
                self.logger.debug("%s: %s", program, line.rstrip())
        return proc.returncode, out_text, err_text

    async def _run(
        self, program: str, *args: str, error: type[EmbeddedVectorsError]
    ) -> str:
        returncode, out_text, err_text = await self._exec(program, *args, error=error)
        if returncode != 0:
            detail = err_text.strip() or out_text.strip() or "no output"
            raise error(f"{program} exited with status {returncode}: {detail}")
        return out_text


__all__ = ["MAINTENANCE_DATABASE", "PostgreSQL", "ServerStatus", "quote_identifier"]
