"""
Lease lock rows for bdp.

A lock is a row in file_locks keyed by resource path. Acquisition runs in
one IMMEDIATE transaction: expired rows for the path are deleted, then the
new row is inserted unless a live one remains. Because every process goes
through the same database, at most one unexpired lease exists per path.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..domain.records import FileLock
from .connection import Database, transaction

logger = logging.getLogger(__name__)


@dataclass
class AcquireResult:
    """Outcome of one acquisition attempt."""
    acquired: bool
    lock: Optional[FileLock] = None       # ours if acquired, the holder's otherwise
    stolen_from: Optional[FileLock] = None  # expired lease we replaced


def try_acquire(
    db: Database,
    resource_path: str,
    locked_by: str,
    token: str,
    ttl: float,
    operation: str,
    now: float,
) -> AcquireResult:
    """Single non-blocking attempt to take the lease on ``resource_path``."""
    with transaction(db, immediate=True):
        db.execute("SELECT * FROM file_locks WHERE resource_path = ?", (resource_path,))
        row = db.fetchone()
        existing = FileLock.from_row(row) if row else None

        stolen = None
        if existing is not None:
            if not existing.is_expired(now):
                return AcquireResult(acquired=False, lock=existing)
            db.execute(
                "DELETE FROM file_locks WHERE resource_path = ? AND expires_at <= ?",
                (resource_path, now)
            )
            stolen = existing

        db.execute(
            """INSERT OR IGNORE INTO file_locks
               (resource_path, locked_by, token, locked_at, ttl, expires_at, operation)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (resource_path, locked_by, token, now, ttl, now + ttl, operation)
        )
        if db.rowcount != 1:
            return AcquireResult(acquired=False)

    if stolen is not None:
        logger.warning(
            f"Took over expired lock on {resource_path} from {stolen.locked_by} "
            f"({stolen.operation})"
        )
    lock = FileLock(
        resource_path=resource_path, locked_by=locked_by, token=token,
        locked_at=now, ttl=ttl, operation=operation,
    )
    return AcquireResult(acquired=True, lock=lock, stolen_from=stolen)


def release(db: Database, resource_path: str, token: str) -> bool:
    """Delete our lease. False if it had already been stolen or swept."""
    db.execute(
        "DELETE FROM file_locks WHERE resource_path = ? AND token = ?",
        (resource_path, token)
    )
    return db.rowcount > 0


def renew(db: Database, resource_path: str, token: str, ttl: float, now: float) -> bool:
    """Extend our lease. False if we no longer hold it."""
    db.execute(
        """UPDATE file_locks SET locked_at = ?, ttl = ?, expires_at = ?
           WHERE resource_path = ? AND token = ?""",
        (now, ttl, now + ttl, resource_path, token)
    )
    return db.rowcount > 0


def get_lock(db: Database, resource_path: str) -> Optional[FileLock]:
    db.execute("SELECT * FROM file_locks WHERE resource_path = ?", (resource_path,))
    row = db.fetchone()
    return FileLock.from_row(row) if row else None


def list_locks(db: Database) -> List[FileLock]:
    db.execute("SELECT * FROM file_locks ORDER BY resource_path")
    return [FileLock.from_row(row) for row in db.fetchall()]


def sweep_expired(db: Database, now: float) -> int:
    """Delete every expired lease; returns how many were removed."""
    db.execute("DELETE FROM file_locks WHERE expires_at <= ?", (now,))
    count = db.rowcount
    if count:
        logger.debug(f"Swept {count} expired lock(s)")
    return count
