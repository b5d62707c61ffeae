from __future__ import annotations

from pathlib import Path

import pytest

from embedded_vectors.postgres.config import ServerSettings


@pytest.fixture
def server_settings(tmp_path: Path) -> ServerSettings:
    storage = tmp_path / "data"
    return ServerSettings(
        installation_dir=storage / "pg",
        data_dir=storage / "pg_data",
        password_file=storage / ".pgpass",
        password="s3cret",
        version="16.3.0",
        port=54329,
        timeout=5.0,
        target="x86_64-unknown-linux-gnu",
    )


@pytest.fixture
def installed_binaries(server_settings: ServerSettings) -> Path:
    bin_dir = server_settings.bin_dir
    bin_dir.mkdir(parents=True)
    for name in ("postgres", "pg_ctl", "initdb"):
        (bin_dir / name).write_text("#!/bin/sh\n")
    return bin_dir
