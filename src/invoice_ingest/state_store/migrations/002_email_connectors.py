"""
Migration 002: Add email connectors.

One row per polled mailbox:
- Credentials (password encrypted with the secret vault)
- Polling cursor (highest processed IMAP UID)
- Health: last run status/error, consecutive failures, active flag
"""

import sqlite3

VERSION = 2
NAME = "email_connectors"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the email_connectors table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS email_connectors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id TEXT NOT NULL,
            label TEXT NOT NULL,
            host TEXT NOT NULL,
            port INTEGER NOT NULL DEFAULT 993,
            secure INTEGER NOT NULL DEFAULT 1,
            username TEXT NOT NULL,
            password_encrypted TEXT NOT NULL,  -- iv:tag:ciphertext (hex)
            folder TEXT NOT NULL DEFAULT 'INBOX',
            poll_interval_minutes INTEGER NOT NULL DEFAULT 5,

            -- Cursor: NULL until the first successful run
            last_synced_uid INTEGER,
            last_sync_at TEXT,

            -- Status: IDLE, RUNNING, SUCCESS, ERROR
            last_sync_status TEXT NOT NULL DEFAULT 'IDLE',
            last_sync_error TEXT,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,

            created_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_email_connectors_tenant
        ON email_connectors (tenant_id, is_active)
    """)

    conn.commit()
