from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent


def _resolve_config_dir() -> Path | None:
    env_override = os.environ.get("EMBEDDED_VECTORS_CONFIG_DIR")
    candidates: list[Path] = []

    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(Path.cwd() / "config")
    candidates.append(PROJECT_ROOT / "config")
    candidates.append(PROJECT_ROOT.parent / "config")

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.is_dir():
            return expanded.resolve()

    if env_override:
        searched = ", ".join(str(path) for path in candidates)
        raise RuntimeError(
            f"Unable to locate configuration directory. Searched: {searched}. "
            "Set EMBEDDED_VECTORS_CONFIG_DIR to a valid directory."
        )
    # Without a config directory the packaged defaults below apply.
    return None


CONFIG_DIR = _resolve_config_dir()


POSTGRES_RELEASES_URL = "https://github.com/theseus-rs/postgresql-binaries"
VECTORS_ARCHIVE_URL = (
    "https://github.com/tensorchord/pgvecto.rs/releases/download/v0.3.0/"
    "vectors-pg16_x86_64-unknown-linux-gnu_0.3.0.zip"
)

DEFAULTS: dict[str, Any] = {
    "APP_NAME": "embedded-vectors",
    "LOG_LEVEL": "INFO",
    "STORAGE": {
        "dir": "data",
    },
    "POSTGRES": {
        "version": "16.3.0",
        "installation_subdir": "pg",
        "data_subdir": "pg_data",
        "password_file": ".pgpass",
        "temporary": False,
        "host": "localhost",
        "port": 0,
        "username": "postgres",
        "timeout": 30.0,
        "releases_url": POSTGRES_RELEASES_URL,
        "target": "",
        "configuration": {},
    },
    "DATABASE": {
        "name": "test",
        "pool_min_size": 1,
        "pool_max_size": 5,
        "command_timeout": 60.0,
    },
    "EXTENSION": {
        "url": VECTORS_ARCHIVE_URL,
        "version": "0.3.0",
        "scratch_dir": "vectors",
        "verify_manifest": True,
    },
}


def _settings_files() -> list[Path]:
    if CONFIG_DIR is None:
        return []
    return [
        CONFIG_DIR / "settings.toml",
        CONFIG_DIR / ".secrets.toml",
        CONFIG_DIR / "settings.local.toml",
    ]


settings = Dynaconf(
    envvar_prefix="EMBEDDED_VECTORS",
    settings_files=_settings_files(),
    environments=True,
    env_switcher="EMBEDDED_VECTORS_ENV",
    load_dotenv=True,
    merge_enabled=True,
)


_MISSING = object()


def _ensure_defaults(prefix: str, defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        dotted = f"{prefix}.{key}" if prefix else key
        existing = settings.get(dotted, _MISSING)

        if isinstance(value, dict):
            if existing is _MISSING:
                settings.set(dotted, value.copy())
                existing = settings.get(dotted, _MISSING)
            # Only recurse into mappings so user-provided primitives survive.
            if isinstance(existing, Mapping):
                _ensure_defaults(dotted, value)
            continue

        if existing is _MISSING:
            settings.set(dotted, value)


_ensure_defaults("", DEFAULTS)


def _coerce_mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    return {}


def _normalise_server_configuration() -> None:
    raw = _coerce_mapping(settings.get("POSTGRES.configuration", {}))
    settings.set(
        "POSTGRES.configuration",
        {str(k).replace("-", "_").lower(): str(v) for k, v in raw.items()},
    )


_normalise_server_configuration()

__all__ = ["settings", "DEFAULTS", "CONFIG_DIR"]
