"""
Migration 004: Add the audit log.

Append-only trail of who did what to which entity, with optional before /
after snapshots as JSON.
"""

import sqlite3

VERSION = 4
NAME = "audit_log"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the audit_log table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            actor_id TEXT,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            before_json TEXT,
            after_json TEXT,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_log_entity
        ON audit_log (tenant_id, entity_type, entity_id)
    """)

    conn.commit()
