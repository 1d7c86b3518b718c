"""
Database schema for the bdp cache tracking database.

The schema is designed to:
- Record every cached file with its checksum and access statistics
- Hold lease locks shared by every process using the same cache root
- Keep an append-only audit trail of downloads and verifications
- Aggregate storage statistics per kind (sources/tools)

Unlike a pure index, this database may be shared by several machines and
holds the audit trail, so schema upgrades only ever add tables and columns.
"""

import logging
import sqlite3
from typing import List, Tuple

logger = logging.getLogger(__name__)

# Current schema version - increment when schema changes
# v1: cache_entries, file_locks, audit_log, storage_stats, version_metadata
CURRENT_VERSION = 1

SCHEMA_V1 = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS _schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

-- One row per cached file
CREATE TABLE IF NOT EXISTS cache_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    spec TEXT NOT NULL UNIQUE,          -- resolved identity
    kind TEXT NOT NULL DEFAULT 'source',
    organization TEXT NOT NULL,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    format TEXT NOT NULL,
    checksum TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    cache_path TEXT NOT NULL,           -- relative to the cache root
    external_version TEXT,
    cached_at REAL NOT NULL,            -- epoch seconds
    last_verified REAL,
    last_accessed REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_path ON cache_entries(cache_path);
CREATE INDEX IF NOT EXISTS idx_cache_entries_cached_at ON cache_entries(cached_at);
CREATE INDEX IF NOT EXISTS idx_cache_entries_last_accessed ON cache_entries(last_accessed);

-- Lease locks: a row exists while some process holds the resource
CREATE TABLE IF NOT EXISTS file_locks (
    resource_path TEXT PRIMARY KEY,
    locked_by TEXT NOT NULL,            -- hostname:pid
    token TEXT NOT NULL,                -- unique per acquisition
    locked_at REAL NOT NULL,
    ttl REAL NOT NULL,
    expires_at REAL NOT NULL,
    operation TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_locks_expires ON file_locks(expires_at);

-- Append-only activity log
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    event_type TEXT NOT NULL,
    cache_path TEXT,
    spec TEXT,
    machine_id TEXT NOT NULL,
    details TEXT                        -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_audit_log_path ON audit_log(cache_path, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_log_event ON audit_log(event_type);

-- Aggregated storage per kind
CREATE TABLE IF NOT EXISTS storage_stats (
    kind TEXT PRIMARY KEY,
    entry_count INTEGER NOT NULL DEFAULT 0,
    total_bytes INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);

-- Mirror of the meta.json record in each version directory
CREATE TABLE IF NOT EXISTS version_metadata (
    version_dir TEXT PRIMARY KEY,       -- e.g. sources/uniprot/P01308@1.0
    kind TEXT NOT NULL,
    organization TEXT NOT NULL,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    external_version TEXT,
    description TEXT,
    formats TEXT NOT NULL,              -- JSON array
    checksums TEXT NOT NULL,            -- JSON object format -> checksum
    updated_at REAL NOT NULL
);
"""


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        cursor = conn.execute(
            "SELECT MAX(version) FROM _schema_info"
        )
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0
    except sqlite3.OperationalError:
        # Table doesn't exist yet
        return 0


def apply_schema(conn: sqlite3.Connection, version: int = CURRENT_VERSION) -> None:
    """Apply every migration newer than the database's current version."""
    current = get_schema_version(conn)

    for number, description, sql in get_migrations():
        if current < number <= version:
            logger.debug(f"Applying cache schema v{number}: {description}")
            conn.executescript(sql)
            conn.execute(
                "INSERT OR REPLACE INTO _schema_info (version, description) VALUES (?, ?)",
                (number, description)
            )

    conn.commit()


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Ensure database has current schema, migrating if necessary."""
    current = get_schema_version(conn)

    if current < CURRENT_VERSION:
        apply_schema(conn, CURRENT_VERSION)


def get_migrations() -> List[Tuple[int, str, str]]:
    """
    Get list of migrations.

    Returns:
        List of (version, description, sql) tuples
    """
    return [
        (1, "Initial cache schema", SCHEMA_V1),
    ]
