"""
Cache entry CRUD operations for bdp.

Rows are created when a download completes and updated on every access or
verification. Removal only happens through explicit cache maintenance.
"""

import json
from typing import Any, Dict, List, Optional

from ..domain.records import CacheEntry
from .connection import Database

_ENTRY_COLUMNS = (
    "spec, kind, organization, name, version, format, checksum, size_bytes, "
    "cache_path, external_version, cached_at, last_verified, last_accessed, access_count"
)

# Stays under SQLite's bound-parameter limit
_BATCH_SIZE = 500


def upsert_entry(db: Database, entry: CacheEntry) -> None:
    """Insert or replace the row for ``entry.spec``, keeping its access count."""
    db.execute(
        f"""INSERT INTO cache_entries ({_ENTRY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(spec) DO UPDATE SET
                kind = excluded.kind,
                format = excluded.format,
                checksum = excluded.checksum,
                size_bytes = excluded.size_bytes,
                cache_path = excluded.cache_path,
                external_version = excluded.external_version,
                cached_at = excluded.cached_at,
                last_verified = excluded.last_verified,
                last_accessed = excluded.last_accessed""",
        (
            entry.spec, entry.kind, entry.organization, entry.name, entry.version,
            entry.format, entry.checksum, entry.size_bytes, entry.cache_path,
            entry.external_version, entry.cached_at, entry.last_verified,
            entry.last_accessed, entry.access_count,
        )
    )


def get_entry(db: Database, spec: str) -> Optional[CacheEntry]:
    db.execute("SELECT * FROM cache_entries WHERE spec = ?", (spec,))
    row = db.fetchone()
    return CacheEntry.from_row(row) if row else None


def get_entries(db: Database, specs: List[str]) -> Dict[str, CacheEntry]:
    """Rows for the given identities, keyed by spec; unknown specs are absent."""
    found: Dict[str, CacheEntry] = {}
    for start in range(0, len(specs), _BATCH_SIZE):
        batch = specs[start:start + _BATCH_SIZE]
        placeholders = ", ".join("?" for _ in batch)
        db.execute(f"SELECT * FROM cache_entries WHERE spec IN ({placeholders})", tuple(batch))
        for row in db.fetchall():
            entry = CacheEntry.from_row(row)
            found[entry.spec] = entry
    return found


def list_entries(
    db: Database,
    kind: Optional[str] = None,
    order_by: str = "spec",
) -> List[CacheEntry]:
    """
    List cache entries.

    Args:
        kind: Only 'source' or 'tool' rows
        order_by: 'spec', 'last_accessed' (least recent first) or 'size'
    """
    order = {
        'spec': 'spec ASC',
        'last_accessed': 'last_accessed ASC, spec ASC',
        'size': 'size_bytes DESC, spec ASC',
    }.get(order_by)
    if order is None:
        raise ValueError(f"Unknown ordering: {order_by}")

    if kind:
        db.execute(f"SELECT * FROM cache_entries WHERE kind = ? ORDER BY {order}", (kind,))
    else:
        db.execute(f"SELECT * FROM cache_entries ORDER BY {order}")
    return [CacheEntry.from_row(row) for row in db.fetchall()]


def entries_cached_before(db: Database, cutoff: float) -> List[CacheEntry]:
    db.execute(
        "SELECT * FROM cache_entries WHERE cached_at < ? ORDER BY cached_at ASC, spec ASC",
        (cutoff,)
    )
    return [CacheEntry.from_row(row) for row in db.fetchall()]


def touch_entries(db: Database, specs: List[str], now: float) -> None:
    """Record an access for each spec."""
    db.executemany(
        """UPDATE cache_entries
           SET last_accessed = ?, access_count = access_count + 1
           WHERE spec = ?""",
        [(now, spec) for spec in specs]
    )


def mark_verified(db: Database, spec: str, now: float) -> bool:
    db.execute(
        "UPDATE cache_entries SET last_verified = ? WHERE spec = ?",
        (now, spec)
    )
    return db.rowcount > 0


def delete_entry(db: Database, spec: str) -> bool:
    db.execute("DELETE FROM cache_entries WHERE spec = ?", (spec,))
    return db.rowcount > 0


def refresh_storage_stats(db: Database, now: float) -> Dict[str, Dict[str, int]]:
    """Recompute the per-kind storage_stats rows from cache_entries."""
    db.execute(
        """SELECT kind, COUNT(*) AS entry_count, COALESCE(SUM(size_bytes), 0) AS total_bytes
           FROM cache_entries GROUP BY kind"""
    )
    stats = {
        row['kind']: {'entry_count': row['entry_count'], 'total_bytes': row['total_bytes']}
        for row in db.fetchall()
    }

    db.execute("DELETE FROM storage_stats")
    db.executemany(
        "INSERT INTO storage_stats (kind, entry_count, total_bytes, updated_at) VALUES (?, ?, ?, ?)",
        [(kind, s['entry_count'], s['total_bytes'], now) for kind, s in sorted(stats.items())]
    )
    return stats


def upsert_version_metadata(db: Database, version_dir: str, meta: Dict[str, Any], now: float) -> None:
    """Mirror a version directory's meta.json into the database."""
    db.execute(
        """INSERT OR REPLACE INTO version_metadata
           (version_dir, kind, organization, name, version, external_version,
            description, formats, checksums, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            version_dir,
            meta['kind'],
            meta['organization'],
            meta['name'],
            meta['version'],
            meta.get('external_version'),
            meta.get('description'),
            json.dumps(sorted(meta.get('formats', []))),
            json.dumps(meta.get('checksums', {}), sort_keys=True),
            now,
        )
    )


def delete_version_metadata(db: Database, version_dir: str) -> None:
    db.execute("DELETE FROM version_metadata WHERE version_dir = ?", (version_dir,))


def get_version_metadata(db: Database, version_dir: str) -> Optional[Dict[str, Any]]:
    db.execute("SELECT * FROM version_metadata WHERE version_dir = ?", (version_dir,))
    row = db.fetchone()
    if not row:
        return None
    result = dict(row)
    result['formats'] = json.loads(result['formats'])
    result['checksums'] = json.loads(result['checksums'])
    return result
