"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_type TEXT NOT NULL CHECK (operation_type IN
        ('create_fork', 'create_pr', 'delete_fork', 'delete_branch', 'simulate_pr')),
    payload TEXT NOT NULL,
    status TEXT DEFAULT 'queued' CHECK (status IN ('queued', 'processing', 'completed', 'failed')),
    result TEXT,
    error TEXT,
    created_by TEXT,
    lease_owner TEXT,
    lease_expires_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    processing_started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status, id);

CREATE TABLE IF NOT EXISTS forks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_owner TEXT NOT NULL,
    repo_name TEXT NOT NULL,
    fork_url TEXT NOT NULL,
    upstream_owner TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(repo_owner, repo_name)
);

CREATE TABLE IF NOT EXISTS prs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fork_id INTEGER NOT NULL REFERENCES forks(id) ON DELETE CASCADE,
    pr_number INTEGER NOT NULL,
    pr_title TEXT,
    forked_pr_url TEXT NOT NULL,
    original_pr_url TEXT,
    state TEXT DEFAULT 'open',
    commit_count INTEGER,
    created_by TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(fork_id, pr_number)
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE operations ADD COLUMN lease_owner TEXT",
        "ALTER TABLE operations ADD COLUMN lease_expires_at TEXT",
        "ALTER TABLE forks ADD COLUMN upstream_owner TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
