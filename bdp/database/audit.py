"""
Audit log operations for bdp.

Records downloads, verifications and corruption findings. Rows are only
ever appended; the reporting side reads them back by path, spec or type.
"""

import json
from typing import Dict, List, Optional

from ..domain.records import AuditEvent
from .connection import Database

# Event types
DOWNLOAD_START = "download_start"
DOWNLOAD_SUCCESS = "download_success"
DOWNLOAD_FAILURE = "download_failure"
VERIFY = "verify"
CORRUPTED = "corrupted"
MISSING = "missing"
REMOVE = "remove"
LOCK_STEAL = "lock_steal"

EVENT_TYPES = (
    DOWNLOAD_START, DOWNLOAD_SUCCESS, DOWNLOAD_FAILURE,
    VERIFY, CORRUPTED, MISSING, REMOVE, LOCK_STEAL,
)


def record_event(db: Database, event: AuditEvent) -> int:
    """
    Append an event.

    Returns:
        ID of the inserted row
    """
    db.execute(
        """INSERT INTO audit_log (timestamp, event_type, cache_path, spec, machine_id, details)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            event.timestamp,
            event.event_type,
            event.cache_path,
            event.spec,
            event.machine_id,
            json.dumps(event.details, sort_keys=True) if event.details else None,
        )
    )
    event.id = db.lastrowid
    return event.id or 0


def get_events(
    db: Database,
    cache_path: Optional[str] = None,
    spec: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[AuditEvent]:
    """Query events, newest first."""
    clauses = []
    params: list = []
    if cache_path:
        clauses.append("cache_path = ?")
        params.append(cache_path)
    if spec:
        clauses.append("spec = ?")
        params.append(spec)
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type)

    sql = "SELECT * FROM audit_log"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY timestamp DESC, id DESC"
    if limit:
        sql += f" LIMIT {int(limit)}"

    db.execute(sql, tuple(params))
    return [AuditEvent.from_row(row) for row in db.fetchall()]


def count_events_by_type(db: Database) -> Dict[str, int]:
    db.execute("SELECT event_type, COUNT(*) AS count FROM audit_log GROUP BY event_type")
    return {row['event_type']: row['count'] for row in db.fetchall()}
