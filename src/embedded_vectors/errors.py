"""Exceptions raised while provisioning the embedded server and its extension."""

from __future__ import annotations


class EmbeddedVectorsError(RuntimeError):
    """Base class for every failure that aborts a provisioning run."""


class StartupError(EmbeddedVectorsError):
    """The PostgreSQL server could not be installed, initialised or started."""


class ShutdownError(EmbeddedVectorsError):
    """The PostgreSQL server did not stop cleanly."""


class DatabaseAlreadyExistsError(EmbeddedVectorsError):
    """A database with the requested name already exists."""


class DatabasePermissionError(EmbeddedVectorsError):
    """The configured role may not perform the requested operation."""


class StalePoolError(EmbeddedVectorsError):
    """A connection pool was used after it was closed or invalidated by a restart."""


class NetworkError(EmbeddedVectorsError):
    """An archive could not be downloaded."""


class ArchiveError(EmbeddedVectorsError):
    """A downloaded archive is corrupt or does not have the expected layout."""


class InstallIoError(EmbeddedVectorsError):
    """Copying or removing installation files failed."""


class SqlError(EmbeddedVectorsError):
    """A SQL statement failed.

    ``sqlstate`` carries the PostgreSQL error code when the server reported one.
    """

    def __init__(self, message: str, *, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class ExtensionAlreadyEnabledError(SqlError):
    """``CREATE EXTENSION`` was issued for an extension that is already enabled."""


def sql_error(exc: BaseException, statement: str) -> SqlError:
    """Wrap a driver exception raised while running ``statement``."""

    sqlstate = getattr(exc, "sqlstate", None)
    summary = " ".join(statement.split())
    return SqlError(f"{summary!r} failed: {exc}", sqlstate=sqlstate)


__all__ = [
    "ArchiveError",
    "DatabaseAlreadyExistsError",
    "DatabasePermissionError",
    "EmbeddedVectorsError",
    "ExtensionAlreadyEnabledError",
    "InstallIoError",
    "NetworkError",
    "ShutdownError",
    "SqlError",
    "StalePoolError",
    "StartupError",
    "sql_error",
]
