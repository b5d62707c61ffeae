"""Embedded PostgreSQL provisioning with the ``vectors`` similarity extension."""

__version__ = "0.1.0"

__all__ = ["__version__"]
