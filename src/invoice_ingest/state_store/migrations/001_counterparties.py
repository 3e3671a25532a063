"""
Migration 001: Add vendors and customers.

Resolved counterparties of incoming (vendors) and outgoing (customers)
documents. The tax id is the authoritative key and unique per tenant;
entries without a tax id are matched on name_normalized.
"""

import sqlite3

VERSION = 1
NAME = "counterparties"

_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        name_normalized TEXT NOT NULL,
        tax_id TEXT,
        address TEXT,
        email TEXT,
        iban TEXT,

        -- Registry (VIES) verification
        registry_name TEXT,
        registry_address TEXT,
        registry_checked_at TEXT,

        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (tenant_id, tax_id)
    )
"""


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the vendors and customers tables."""
    cursor = conn.cursor()
    for table in ("vendors", "customers"):
        cursor.execute(_TABLE_SQL.format(table=table))
        cursor.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_name "
            f"ON {table} (tenant_id, name_normalized)"
        )
    conn.commit()
