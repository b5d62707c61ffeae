from __future__ import annotations

import platform
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

from embedded_vectors.postgres.secrets import PasswordStore
from embedded_vectors.util import resolve_under, str_to_bool


_ARCHITECTURES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}


def detect_target(system: str | None = None, machine: str | None = None) -> str:
    """Return the release target triple for the current platform."""

    system = system or platform.system()
    machine = (machine or platform.machine()).lower()
    arch = _ARCHITECTURES.get(machine, machine)
    if system == "Linux":
        return f"{arch}-unknown-linux-gnu"
    if system == "Darwin":
        return f"{arch}-apple-darwin"
    if system == "Windows":
        return f"{arch}-pc-windows-msvc"
    raise ValueError(f"Unsupported platform for PostgreSQL binaries: {system}/{machine}")


@dataclass(frozen=True, slots=True)
class ServerSettings:
    """Everything needed to install, initialise and run one server instance.

    Instances are immutable: the installation and data directories are fixed
    before the server process starts and stay the same for its lifetime.
    """

    installation_dir: Path
    data_dir: Path
    password_file: Path
    password: str = field(repr=False)
    version: str = "16.3.0"
    temporary: bool = False
    host: str = "localhost"
    port: int = 0
    username: str = "postgres"
    timeout: float = 30.0
    releases_url: str = "https://github.com/theseus-rs/postgresql-binaries"
    target: str = ""
    configuration: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        storage_dir: Path | None = None,
        version: str | None = None,
        cwd: Path | None = None,
    ) -> "ServerSettings":
        base = cwd or Path.cwd()
        storage = (
            resolve_under(base, storage_dir)
            if storage_dir is not None
            else resolve_under(base, str(settings.get("STORAGE.dir", "data")))
        )
        password_file = resolve_under(
            storage, str(settings.get("POSTGRES.password_file", ".pgpass"))
        )
        configuration = settings.get("POSTGRES.configuration", {}) or {}

        return cls(
            installation_dir=resolve_under(
                storage, str(settings.get("POSTGRES.installation_subdir", "pg"))
            ),
            data_dir=resolve_under(
                storage, str(settings.get("POSTGRES.data_subdir", "pg_data"))
            ),
            password_file=password_file,
            password=PasswordStore(password_file).load_or_generate(),
            version=str(version or settings.get("POSTGRES.version", "16.3.0")),
            temporary=str_to_bool(settings.get("POSTGRES.temporary", False)),
            host=str(settings.get("POSTGRES.host", "localhost")),
            port=int(settings.get("POSTGRES.port", 0)),
            username=str(settings.get("POSTGRES.username", "postgres")),
            timeout=float(settings.get("POSTGRES.timeout", 30.0)),
            releases_url=str(
                settings.get(
                    "POSTGRES.releases_url",
                    "https://github.com/theseus-rs/postgresql-binaries",
                )
            ).rstrip("/"),
            target=str(settings.get("POSTGRES.target", "") or ""),
            configuration={str(k): str(v) for k, v in dict(configuration).items()},
        )

    @property
    def version_dir(self) -> Path:
        return self.installation_dir / self.version

    @property
    def bin_dir(self) -> Path:
        return self.version_dir / "bin"

    @property
    def lib_dir(self) -> Path:
        return self.version_dir / "lib"

    @property
    def share_dir(self) -> Path:
        return self.version_dir / "share"

    def resolved_target(self) -> str:
        return self.target or detect_target()

    def with_port(self, port: int) -> "ServerSettings":
        return replace(self, port=port)

    def url(self, database: str) -> str:
        user = quote(self.username, safe="")
        password = quote(self.password, safe="")
        return f"postgresql://{user}:{password}@{self.host}:{self.port}/{quote(database, safe='')}"


__all__ = ["ServerSettings", "detect_target"]
