"""Download and unpack prebuilt PostgreSQL binaries.

Releases come from the ``postgresql-binaries`` project, which publishes one
``postgresql-<version>-<target>.tar.gz`` per platform together with a
``.sha256`` file. The archive holds a single top-level directory whose
``bin``/``lib``/``share`` children end up in ``<installation_dir>/<version>``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath

import httpx

from embedded_vectors.errors import ArchiveError, InstallIoError
from embedded_vectors.net import fetch_bytes
from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.util import sha256_bytes


logger = logging.getLogger(__name__)


def executable_name(name: str) -> str:
    return f"{name}.exe" if os.name == "nt" else name


def archive_url(settings: ServerSettings) -> str:
    version = settings.version
    target = settings.resolved_target()
    return (
        f"{settings.releases_url}/releases/download/{version}/"
        f"postgresql-{version}-{target}.tar.gz"
    )


def binaries_installed(settings: ServerSettings) -> bool:
    return (settings.bin_dir / executable_name("postgres")).is_file()


def _parse_checksum(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        raise ArchiveError("Checksum file is empty")
    return text.split()[0].lower()


def _strip_prefix(members: list[tarfile.TarInfo]) -> str | None:
    tops = {PurePosixPath(m.name).parts[0] for m in members if PurePosixPath(m.name).parts}
    if len(tops) != 1:
        return None
    (top,) = tops
    # A lone top-level file is content, not a wrapper directory.
    if any(m.name == top and not m.isdir() for m in members):
        return None
    return top


def _extract_tarball(data: bytes, destination: Path) -> None:
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".postgresql-", dir=destination.parent))
    except OSError as exc:
        raise InstallIoError(f"Unable to prepare {destination.parent}: {exc}") from exc
    try:
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                members = tar.getmembers()
                if not members:
                    raise ArchiveError("PostgreSQL archive is empty")
                tar.extractall(staging, filter="data")
        except (tarfile.TarError, EOFError) as exc:
            raise ArchiveError(f"Corrupt PostgreSQL archive: {exc}") from exc
        except OSError as exc:
            raise InstallIoError(f"Unable to extract PostgreSQL archive: {exc}") from exc

        prefix = _strip_prefix(members)
        source = staging / prefix if prefix else staging
        if not (source / "bin").is_dir():
            raise ArchiveError("PostgreSQL archive has no bin directory")
        try:
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        except OSError as exc:
            raise InstallIoError(
                f"Unable to copy PostgreSQL binaries to {destination}: {exc}"
            ) from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)


async def install_binaries(
    settings: ServerSettings, *, client: httpx.AsyncClient | None = None
) -> Path:
    """Install the configured PostgreSQL version and return its directory."""

    url = archive_url(settings)
    logger.info("Installing PostgreSQL %s from %s", settings.version, url)
    data = await fetch_bytes(url, client=client)
    expected = _parse_checksum(await fetch_bytes(f"{url}.sha256", client=client))
    actual = sha256_bytes(data)
    if actual != expected:
        raise ArchiveError(
            f"Checksum mismatch for {url}: expected {expected}, got {actual}"
        )

    destination = settings.version_dir
    await asyncio.to_thread(_extract_tarball, data, destination)
    logger.info("PostgreSQL %s installed to %s", settings.version, destination)
    return destination


__all__ = [
    "archive_url",
    "binaries_installed",
    "executable_name",
    "install_binaries",
]
