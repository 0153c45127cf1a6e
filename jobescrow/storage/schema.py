"""Database schema for the SQLite escrow storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)

Amounts and balances are stored as decimal TEXT: the funds unit is an
unsigned 64-bit integer, which does not fit SQLite's signed INTEGER.
"""

import logging
import sqlite3

from jobescrow.errors import StorageError

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Jobs: one persisted record per job, keyed by job id
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    employer TEXT NOT NULL,
    worker TEXT NOT NULL,
    status TEXT NOT NULL,
    record TEXT NOT NULL,  -- JSON, Job.to_dict() layout
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_employer ON jobs(employer);
CREATE INDEX IF NOT EXISTS idx_jobs_worker ON jobs(worker);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

-- Ledger accounts (party wallets and per-job custody)
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK (kind IN ('external', 'custody')),
    balance TEXT NOT NULL DEFAULT '0',
    job_id TEXT,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_custody_job
    ON accounts(job_id) WHERE kind = 'custody';

-- Ledger movements; source is NULL for external deposits
CREATE TABLE IF NOT EXISTS transfers (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    source TEXT,
    destination TEXT NOT NULL,
    amount TEXT NOT NULL,
    memo TEXT NOT NULL DEFAULT '',
    job_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transfers_job ON transfers(job_id);

-- Audit log of job operations
CREATE TABLE IF NOT EXISTS job_transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    job_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    action TEXT NOT NULL,
    actor TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id);

-- Consumed credential nonces (replay protection)
CREATE TABLE IF NOT EXISTS used_nonces (
    identity TEXT NOT NULL,
    nonce TEXT NOT NULL,
    used_at TEXT NOT NULL,
    PRIMARY KEY (identity, nonce)
);
CREATE INDEX IF NOT EXISTS idx_used_nonces_used_at ON used_nonces(used_at);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and record the schema version.

    Raises:
        StorageError: If the database was written by a newer schema.
    """
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    current = row["version"] if row and row["version"] is not None else None

    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Initialized escrow schema v{SCHEMA_VERSION}")
    elif current > SCHEMA_VERSION:
        raise StorageError(
            f"Database schema v{current} is newer than supported v{SCHEMA_VERSION}"
        )
