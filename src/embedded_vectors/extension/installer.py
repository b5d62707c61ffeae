"""Install the ``vectors`` extension files into a PostgreSQL installation tree.

The release archive is a flat zip holding ``vectors.so``, the
``vectors--*.sql`` schema scripts and ``vectors.control``. The library goes
to ``<version>/lib`` and everything else to ``<version>/share/extension``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import orjson

from embedded_vectors.errors import ArchiveError, InstallIoError
from embedded_vectors.net import fetch_bytes
from embedded_vectors.util import resolve_under, sha256_file, str_to_bool


logger = logging.getLogger(__name__)

LIBRARY_NAME = "vectors.so"
CONTROL_NAME = "vectors.control"
SCHEMA_PREFIX = "vectors--"
MANIFEST_NAME = "vectors.manifest.json"


@dataclass(frozen=True, slots=True)
class ExtensionSettings:
    url: str
    version: str
    scratch_dir: Path
    verify_manifest: bool = True

    @classmethod
    def from_settings(cls, settings: Any, *, cwd: Path | None = None) -> "ExtensionSettings":
        base = cwd or Path.cwd()
        return cls(
            url=str(settings.get("EXTENSION.url")),
            version=str(settings.get("EXTENSION.version", "")),
            scratch_dir=resolve_under(base, str(settings.get("EXTENSION.scratch_dir", "vectors"))),
            verify_manifest=str_to_bool(settings.get("EXTENSION.verify_manifest", True)),
        )


def library_path(installation_dir: Path, pg_version: str) -> Path:
    return installation_dir / pg_version / "lib" / LIBRARY_NAME


def extension_dir(installation_dir: Path, pg_version: str) -> Path:
    return installation_dir / pg_version / "share" / "extension"


def manifest_path(installation_dir: Path, pg_version: str) -> Path:
    return extension_dir(installation_dir, pg_version) / MANIFEST_NAME


def read_manifest(installation_dir: Path, pg_version: str) -> dict[str, Any] | None:
    path = manifest_path(installation_dir, pg_version)
    if not path.is_file():
        return None
    try:
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError:
        logger.warning("Ignoring unreadable install manifest %s", path)
        return None
    return data if isinstance(data, dict) else None


def is_installed(installation_dir: Path, pg_version: str, *, verify: bool = False) -> bool:
    """Report whether the extension library is present.

    Without ``verify`` this only checks that ``vectors.so`` exists, so a
    partially copied or foreign file counts as installed. With ``verify`` the
    install manifest must exist and every file it records must match its
    sha256.
    """

    library = library_path(installation_dir, pg_version)
    if not library.is_file():
        return False
    if not verify:
        return True

    manifest = read_manifest(installation_dir, pg_version)
    if manifest is None:
        logger.info("No install manifest next to %s", library)
        return False

    pg_dir = installation_dir / pg_version
    files = manifest.get("files")
    if not isinstance(files, dict) or f"lib/{LIBRARY_NAME}" not in files:
        return False
    for relative, expected in files.items():
        path = pg_dir / relative
        if not path.is_file() or sha256_file(path) != expected:
            logger.info("Installed file %s does not match its manifest entry", path)
            return False
    return True


def _extract(data: bytes, scratch_dir: Path) -> None:
    if scratch_dir.exists():
        shutil.rmtree(scratch_dir)
    scratch_dir.mkdir(parents=True)
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            archive.extractall(scratch_dir)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
        raise ArchiveError(f"Corrupt extension archive: {exc}") from exc


def _plan_copies(scratch_dir: Path, lib_dir: Path, ext_dir: Path) -> list[tuple[Path, Path]]:
    library = scratch_dir / LIBRARY_NAME
    control = scratch_dir / CONTROL_NAME
    missing = [p.name for p in (library, control) if not p.is_file()]
    if missing:
        found = sorted(p.name for p in scratch_dir.iterdir())
        raise ArchiveError(
            f"Extension archive is missing {', '.join(missing)} (found: {', '.join(found) or 'nothing'})"
        )

    plan = [(library, lib_dir / LIBRARY_NAME)]
    for path in sorted(scratch_dir.iterdir()):
        if path.is_file() and path.name.startswith(SCHEMA_PREFIX):
            plan.append((path, ext_dir / path.name))
    plan.append((control, ext_dir / CONTROL_NAME))
    return plan


def _backup_path(target: Path) -> Path:
    return target.with_name(f".{target.name}.previous")


def _rollback(placed: list[Path]) -> None:
    """Put back the files replaced by this install and remove the new ones."""

    for path in reversed(placed):
        backup = _backup_path(path)
        if backup.exists():
            os.replace(backup, path)
        else:
            path.unlink(missing_ok=True)


def _discard_backups(placed: list[Path]) -> None:
    for path in placed:
        _backup_path(path).unlink(missing_ok=True)


def _staged_copy(plan: list[tuple[Path, Path]]) -> list[Path]:
    """Copy each file next to its target, then move it into place.

    An existing target is kept under a backup name until the whole install
    succeeds. If any copy fails, the files this call replaced are restored
    and the ones it added are removed.
    """

    placed: list[Path] = []
    for source, target in plan:
        partial = target.with_name(f".{target.name}.partial")
        backup = _backup_path(target)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            backup.unlink(missing_ok=True)
            shutil.copy2(source, partial)
            if target.exists():
                os.replace(target, backup)
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            if backup.exists() and not target.exists():
                os.replace(backup, target)
            _rollback(placed)
            raise InstallIoError(f"Unable to copy {source.name} to {target}: {exc}") from exc
        logger.debug("Copied %s to %s", source.name, target)
        placed.append(target)
    return placed


def _write_manifest(pg_dir: Path, url: str, version: str, files: list[Path]) -> Path:
    manifest = {
        "url": url,
        "version": version,
        "files": {path.relative_to(pg_dir).as_posix(): sha256_file(path) for path in files},
    }
    target = pg_dir / "share" / "extension" / MANIFEST_NAME
    partial = target.with_name(f".{target.name}.partial")
    try:
        partial.write_bytes(orjson.dumps(manifest, option=orjson.OPT_INDENT_2))
        os.replace(partial, target)
    finally:
        partial.unlink(missing_ok=True)
    return target


def _install_from_archive(
    data: bytes,
    pg_dir: Path,
    scratch_dir: Path,
    url: str,
    version: str,
) -> list[Path]:
    lib_dir = pg_dir / "lib"
    ext_dir = pg_dir / "share" / "extension"
    try:
        logger.info("Extracting archive to %s", scratch_dir)
        _extract(data, scratch_dir)
        plan = _plan_copies(scratch_dir, lib_dir, ext_dir)
        logger.info("Copying library to %s", lib_dir)
        logger.info("Copying schema files to %s", ext_dir)
        copied = _staged_copy(plan)
        try:
            _write_manifest(pg_dir, url, version, copied)
        except OSError as exc:
            _rollback(copied)
            raise InstallIoError(f"Unable to write install manifest: {exc}") from exc
        _discard_backups(copied)
    except OSError as exc:
        shutil.rmtree(scratch_dir, ignore_errors=True)
        raise InstallIoError(f"Extension install failed in {scratch_dir}: {exc}") from exc
    except Exception:
        shutil.rmtree(scratch_dir, ignore_errors=True)
        raise

    logger.info("Deleting extracted %s directory", scratch_dir)
    try:
        shutil.rmtree(scratch_dir)
    except OSError as exc:
        raise InstallIoError(f"Unable to delete {scratch_dir}: {exc}") from exc
    return copied


async def install(
    installation_dir: Path,
    pg_version: str,
    extension: ExtensionSettings,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[Path]:
    """Download the extension archive and copy its files into place.

    Returns the installed files. Raises :class:`NetworkError`,
    :class:`ArchiveError` or :class:`InstallIoError`.
    """

    pg_dir = installation_dir / pg_version
    logger.info("Setting up vectors extension %s in %s", extension.version, pg_dir)
    data = await fetch_bytes(extension.url, client=client)
    copied = await asyncio.to_thread(
        _install_from_archive,
        data,
        pg_dir,
        extension.scratch_dir,
        extension.url,
        extension.version,
    )
    logger.info("Vectors extension install complete (%d files)", len(copied))
    return copied


__all__ = [
    "CONTROL_NAME",
    "ExtensionSettings",
    "LIBRARY_NAME",
    "MANIFEST_NAME",
    "SCHEMA_PREFIX",
    "extension_dir",
    "install",
    "is_installed",
    "library_path",
    "manifest_path",
    "read_manifest",
]
