"""
Migration 003: Add the job queue.

Durable at-least-once queue shared by all workers.

Features:
- Status tracking: PENDING, PROCESSING, COMPLETED, FAILED
- Attempts with exponential backoff (run_after)
- Repeatable jobs (repeat_every_seconds) keyed by job_key
- Lock timestamp for stalled-job recovery
"""

import sqlite3

VERSION = 3
NAME = "job_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the job_queue table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS job_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_type TEXT NOT NULL,
            job_key TEXT,
            payload_json TEXT NOT NULL,

            -- Status: PENDING, PROCESSING, COMPLETED, FAILED
            status TEXT NOT NULL DEFAULT 'PENDING',

            -- Retry tracking
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 1,
            backoff_seconds REAL NOT NULL DEFAULT 0,

            -- Scheduling
            run_after TEXT NOT NULL,
            repeat_every_seconds INTEGER,  -- NULL = one-off job
            locked_at TEXT,

            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        )
    """)

    # Index for claiming due jobs
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_job_queue_due
        ON job_queue (status, run_after)
    """)

    # Index for repeatable job lookups
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_job_queue_key
        ON job_queue (job_key)
    """)

    conn.commit()
