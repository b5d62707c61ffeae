from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from embedded_vectors.errors import (
    DatabaseAlreadyExistsError,
    DatabasePermissionError,
    ShutdownError,
    StartupError,
)
from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.postgres.server import PostgreSQL, ServerStatus, quote_identifier
from tests.helpers import FakeProcess


class Recorder:
    """Replacement for ``asyncio.create_subprocess_exec`` that logs argv."""

    def __init__(self, settings: ServerSettings, **results: FakeProcess) -> None:
        self.settings = settings
        self.results = results
        self.calls: list[list[str]] = []

    async def __call__(self, *cmd: str, **kwargs) -> FakeProcess:
        self.calls.append(list(cmd))
        program = Path(cmd[0]).name
        if program == "initdb":
            self.settings.data_dir.mkdir(parents=True, exist_ok=True)
            (self.settings.data_dir / "PG_VERSION").write_text("16\n")
        return self.results.get(program.replace("-", "_"), FakeProcess())

    def programs(self) -> list[str]:
        return [f"{Path(c[0]).name} {c[1] if len(c) > 1 else ''}".strip() for c in self.calls]


def _initialise(settings: ServerSettings) -> None:
    settings.data_dir.mkdir(parents=True)
    (settings.data_dir / "PG_VERSION").write_text("16\n")


def test_quote_identifier_escapes_quotes() -> None:
    assert quote_identifier('we"ird') == '"we""ird"'


def test_status_follows_install_state(server_settings: ServerSettings) -> None:
    postgresql = PostgreSQL(server_settings)
    assert postgresql.status() is ServerStatus.NOT_INSTALLED

    server_settings.bin_dir.mkdir(parents=True)
    (server_settings.bin_dir / "postgres").write_text("")
    assert postgresql.status() is ServerStatus.INSTALLED

    _initialise(server_settings)
    assert postgresql.status() is ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_setup_writes_password_and_runs_initdb(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    install = AsyncMock()
    monkeypatch.setattr("embedded_vectors.postgres.server.install_binaries", install)

    postgresql = PostgreSQL(server_settings)
    await postgresql.setup()

    install.assert_not_awaited()
    assert server_settings.password_file.read_text() == "s3cret"
    (initdb,) = recorder.calls
    assert Path(initdb[0]).name == "initdb"
    assert f"--pgdata={server_settings.data_dir}" in initdb
    assert f"--pwfile={server_settings.password_file}" in initdb
    assert "--auth=password" in initdb
    assert postgresql.status() is ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_setup_installs_missing_binaries_and_skips_initdb_when_initialised(
    server_settings: ServerSettings, monkeypatch
) -> None:
    _initialise(server_settings)
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    install = AsyncMock()
    monkeypatch.setattr("embedded_vectors.postgres.server.install_binaries", install)

    await PostgreSQL(server_settings).setup()

    install.assert_awaited_once()
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_start_passes_port_and_configuration(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    settings = dataclasses.replace(
        server_settings, configuration={"shared_buffers": "64MB"}
    )
    recorder = Recorder(settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    postgresql = PostgreSQL(settings)
    await postgresql.start()

    (start,) = recorder.calls
    assert start[1] == "start"
    assert f"--log={settings.data_dir / 'start.log'}" in start
    assert "--options=-F -p 54329 -c shared_buffers=64MB" in start
    assert postgresql.status() is ServerStatus.STARTED

    await postgresql.start()
    assert len(recorder.calls) == 1


@pytest.mark.asyncio
async def test_start_picks_port_once(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    monkeypatch.setattr("embedded_vectors.postgres.server.find_free_port", lambda: 61000)

    postgresql = PostgreSQL(dataclasses.replace(server_settings, port=0))
    await postgresql.start()
    await postgresql.stop()
    monkeypatch.setattr("embedded_vectors.postgres.server.find_free_port", lambda: 62000)
    await postgresql.start()

    assert postgresql.settings.port == 61000
    assert postgresql.url("test").endswith(":61000/test")


@pytest.mark.asyncio
async def test_start_requires_binaries(server_settings: ServerSettings) -> None:
    with pytest.raises(StartupError, match="not installed"):
        await PostgreSQL(server_settings).start()


@pytest.mark.asyncio
async def test_start_requires_initialised_data_dir(
    server_settings: ServerSettings, installed_binaries: Path
) -> None:
    with pytest.raises(StartupError, match="not initialised"):
        await PostgreSQL(server_settings).start()


@pytest.mark.asyncio
async def test_start_failure_reports_stderr(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    recorder = Recorder(
        server_settings, pg_ctl=FakeProcess(1, stderr=b"could not bind IPv4 address\n")
    )
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    postgresql = PostgreSQL(server_settings)
    with pytest.raises(StartupError, match="could not bind"):
        await postgresql.start()
    assert postgresql.status() is ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_missing_executable_is_a_startup_error(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)

    async def boom(*cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", boom)

    with pytest.raises(StartupError, match="Unable to run pg_ctl"):
        await PostgreSQL(server_settings).start()


@pytest.mark.asyncio
async def test_stop_is_a_no_op_when_not_started(
    server_settings: ServerSettings, monkeypatch
) -> None:
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    await PostgreSQL(server_settings).stop()

    assert recorder.calls == []


@pytest.mark.asyncio
async def test_stop_timeout_kills_pg_ctl(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    settings = dataclasses.replace(server_settings, timeout=0.01)
    hanging = FakeProcess()

    async def never() -> tuple[bytes, bytes]:
        await asyncio.sleep(10)
        return b"", b""

    hanging.communicate = never  # type: ignore[method-assign]

    postgresql = PostgreSQL(settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", Recorder(settings))
    await postgresql.start()

    async def spawn(*cmd, **kwargs):
        return hanging

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)
    with pytest.raises(ShutdownError, match="did not finish"):
        await postgresql.stop()
    assert hanging.killed


@pytest.mark.asyncio
async def test_restart_closes_old_pool_and_reuses_its_config(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    raw_pool = MagicMock(close=AsyncMock())
    monkeypatch.setattr(asyncpg, "create_pool", AsyncMock(return_value=raw_pool))

    postgresql = PostgreSQL(server_settings)
    await postgresql.start()
    old = await postgresql.create_pool("test", max_size=3)

    new = await postgresql.restart(old)

    assert old.closed
    assert new is not old
    assert new.database == "test"
    assert new.pool_config == old.pool_config
    assert [c[1] for c in recorder.calls] == ["start", "stop", "start"]


@pytest.mark.asyncio
async def test_restart_needs_a_database(server_settings: ServerSettings) -> None:
    with pytest.raises(ValueError):
        await PostgreSQL(server_settings).restart()


@pytest.mark.asyncio
async def test_context_manager_removes_temporary_data(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    settings = dataclasses.replace(server_settings, temporary=True)
    recorder = Recorder(settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    async with PostgreSQL(settings) as postgresql:
        assert postgresql.status() is ServerStatus.STARTED
        assert settings.password_file.exists()

    assert [Path(c[0]).name for c in recorder.calls] == ["initdb", "pg_ctl", "pg_ctl"]
    assert not settings.data_dir.exists()
    assert not settings.password_file.exists()


class _Connection:
    def __init__(self, *, fetchval=None, execute_error: Exception | None = None) -> None:
        self.fetchval = AsyncMock(return_value=fetchval)
        self.execute = AsyncMock(side_effect=execute_error)
        self.close = AsyncMock()


async def _started(settings: ServerSettings, monkeypatch) -> PostgreSQL:
    _initialise(settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", Recorder(settings))
    postgresql = PostgreSQL(settings)
    await postgresql.start()
    return postgresql


@pytest.mark.asyncio
async def test_database_exists(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    postgresql = await _started(server_settings, monkeypatch)
    conn = _Connection(fetchval=True)
    connect = AsyncMock(return_value=conn)
    monkeypatch.setattr(asyncpg, "connect", connect)

    assert await postgresql.database_exists("test") is True

    assert connect.await_args.args[0].endswith("/postgres")
    assert conn.fetchval.await_args.args[1] == "test"
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_database_quotes_name(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    postgresql = await _started(server_settings, monkeypatch)
    conn = _Connection()
    monkeypatch.setattr(asyncpg, "connect", AsyncMock(return_value=conn))

    await postgresql.create_database("test")

    conn.execute.assert_awaited_once_with('CREATE DATABASE "test"')


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("driver_error", "expected"),
    [
        (asyncpg.exceptions.DuplicateDatabaseError, DatabaseAlreadyExistsError),
        (asyncpg.exceptions.InsufficientPrivilegeError, DatabasePermissionError),
    ],
)
async def test_create_database_translates_errors(
    server_settings: ServerSettings,
    installed_binaries: Path,
    monkeypatch,
    driver_error,
    expected,
) -> None:
    postgresql = await _started(server_settings, monkeypatch)
    conn = _Connection(execute_error=driver_error("nope"))
    monkeypatch.setattr(asyncpg, "connect", AsyncMock(return_value=conn))

    with pytest.raises(expected):
        await postgresql.create_database("test")
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_database_operations_need_a_running_server(
    server_settings: ServerSettings,
) -> None:
    with pytest.raises(StartupError, match="not running"):
        await PostgreSQL(server_settings).database_exists("test")


@pytest.mark.asyncio
async def test_start_timeout_stops_forked_postmaster(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    settings = dataclasses.replace(server_settings, timeout=0.01)
    calls: list[list[str]] = []

    async def never() -> tuple[bytes, bytes]:
        await asyncio.sleep(10)
        return b"", b""

    async def spawn(*cmd, **kwargs):
        calls.append(list(cmd[1:]))
        proc = FakeProcess()
        if cmd[1] == "start":
            proc.communicate = never  # type: ignore[method-assign]
        return proc

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)

    postgresql = PostgreSQL(settings)
    with pytest.raises(StartupError, match="did not finish"):
        await postgresql.start()

    assert [c[0] for c in calls] == ["start", "stop"]
    assert "--mode=immediate" in calls[1]
    assert postgresql.status() is ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_failed_start_with_pid_file_stops_postmaster(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    (server_settings.data_dir / "postmaster.pid").write_text("4242\n")
    recorder = Recorder(server_settings, pg_ctl=FakeProcess(1, stderr=b"FATAL\n"))
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    with pytest.raises(StartupError, match="FATAL"):
        await PostgreSQL(server_settings).start()

    assert [c[1] for c in recorder.calls] == ["start", "stop"]


@pytest.mark.asyncio
async def test_failed_start_without_postmaster_is_not_stopped(
    server_settings: ServerSettings, installed_binaries: Path, monkeypatch
) -> None:
    _initialise(server_settings)
    recorder = Recorder(server_settings, pg_ctl=FakeProcess(1, stderr=b"port in use\n"))
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    with pytest.raises(StartupError):
        await PostgreSQL(server_settings).start()

    assert [c[1] for c in recorder.calls] == ["start"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("returncode", "expected"),
    [(0, ServerStatus.STARTED), (3, ServerStatus.STOPPED)],
)
async def test_detect_status_asks_pg_ctl(
    server_settings: ServerSettings,
    installed_binaries: Path,
    monkeypatch,
    returncode: int,
    expected: ServerStatus,
) -> None:
    _initialise(server_settings)
    recorder = Recorder(server_settings, pg_ctl=FakeProcess(returncode))
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    assert await PostgreSQL(server_settings).detect_status() is expected
    assert recorder.calls[0][1] == "status"


@pytest.mark.asyncio
async def test_detect_status_skips_pg_ctl_when_not_installed(
    server_settings: ServerSettings, monkeypatch
) -> None:
    recorder = Recorder(server_settings)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)

    assert await PostgreSQL(server_settings).detect_status() is ServerStatus.NOT_INSTALLED
    assert recorder.calls == []
