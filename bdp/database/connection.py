"""
Database connection management for bdp.

The tracking database is SQLite in WAL mode with a busy timeout: several
bdp processes (and, with a shared cache root, several machines) write to
the same file, and a writer that finds it locked waits instead of failing.

sqlite3 connections are not shared across threads: every download worker
opens its own Database.
"""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Generator, Union

from .schema import ensure_schema

# Seconds to wait on a locked database before raising
DEFAULT_BUSY_TIMEOUT = 30.0


def get_db_path(config: Optional[dict] = None, project_dir: Union[str, Path, None] = None) -> Path:
    """
    Get the database file path.

    Checks in order:
    1. BDP_DB environment variable
    2. {cache.root}/bdp.db if a shared cache root is configured
    3. Default: {project}/.bdp/bdp.db
    """
    if os.environ.get('BDP_DB'):
        return Path(os.environ['BDP_DB']).expanduser()

    root = ((config or {}).get('cache') or {}).get('root')
    if root:
        return Path(root).expanduser() / 'bdp.db'

    return Path(project_dir or '.') / '.bdp' / 'bdp.db'


def get_connection(db_path: Union[str, Path], timeout: float = DEFAULT_BUSY_TIMEOUT) -> sqlite3.Connection:
    """
    Open the tracking database, creating it and migrating its schema first
    if needed.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    ensure_schema(conn)
    return conn


class Database:
    """
    One connection to the tracking database, used as a context manager.

    Leaving the block commits; an exception rolls back instead.

    Usage:
        with Database(paths.db_path) as db:
            db.execute("SELECT * FROM cache_entries WHERE kind = ?", ("source",))
            for row in db.fetchall():
                print(row['spec'], row['size_bytes'])
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._cursor: Optional[sqlite3.Cursor] = None

    def __enter__(self) -> 'Database':
        self._conn = get_connection(self.db_path, timeout=self.timeout)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._cursor:
            self._cursor.close()
        if self._conn:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
            self._conn.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Use 'with Database(path) as db:'")
        return self._conn

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        self._cursor = self.conn.execute(sql, params)
        return self._cursor

    def executemany(self, sql: str, params_seq) -> sqlite3.Cursor:
        self._cursor = self.conn.executemany(sql, params_seq)
        return self._cursor

    def fetchone(self) -> Optional[sqlite3.Row]:
        return self._cursor.fetchone() if self._cursor is not None else None

    def fetchall(self) -> list:
        return self._cursor.fetchall() if self._cursor is not None else []

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    @property
    def lastrowid(self) -> Optional[int]:
        return self._cursor.lastrowid if self._cursor is not None else None

    @property
    def rowcount(self) -> int:
        """Rows changed by the last statement (0 before any)."""
        return self._cursor.rowcount if self._cursor is not None else 0


@contextmanager
def transaction(db: Database, immediate: bool = False) -> Generator[None, None, None]:
    """
    Explicit transaction; commits on success, rolls back on exception.

    With ``immediate=True`` the write lock is taken up front (BEGIN
    IMMEDIATE), so a lease check followed by an insert cannot interleave
    with another process doing the same.
    """
    if immediate:
        if db.conn.in_transaction:
            db.commit()
        db.execute("BEGIN IMMEDIATE")
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
