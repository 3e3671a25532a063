"""
Database migrations module.

Versioned, ordered migrations for the SQLite state store, tracked in the
`migrations` table.
"""

from .runner import Migration, MigrationRunner, get_all_migrations

__all__ = ["Migration", "MigrationRunner", "get_all_migrations"]
