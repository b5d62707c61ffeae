"""Embedded PostgreSQL server management."""

from embedded_vectors.postgres.config import ServerSettings
from embedded_vectors.postgres.pool import DatabasePool
from embedded_vectors.postgres.secrets import PasswordStore
from embedded_vectors.postgres.server import PostgreSQL, ServerStatus


__all__ = ["DatabasePool", "PasswordStore", "PostgreSQL", "ServerSettings", "ServerStatus"]
