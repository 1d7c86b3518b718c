"""
Cache service for bdp.

CacheStore owns the on-disk cache and its tracking database:

    {root}/sources/{org}/{name}@{version}/{name}.{format}
    {root}/sources/{org}/{name}@{version}/meta.json
    {root}/tools/...

Every method opens its own Database connection, so one CacheStore can be
used from several worker threads. Mutations of a cached file happen only
while holding the lease lock on its cache-relative path; the relative path
is used as the lock key so machines mounting a shared root at different
mount points still agree on it.
"""

import json
import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Set

from ..config import CachePaths, resolve_cache_paths
from ..database import audit as audit_db
from ..database import entries as entries_db
from ..database import locks as locks_db
from ..database.connection import Database
from ..domain.entry import ResolvedEntry, SOURCE, TOOL
from ..domain.operation import OperationDetail, OperationStatus, OperationSummary
from ..domain.records import AuditEvent, CacheEntry, FileLock
from ..domain.spec import parse_spec
from ..errors import CacheError, LockTimeoutError, ParseError
from ..infra.file_store import atomic_write_text, dump_json
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

KIND_DIRS = {SOURCE: "sources", TOOL: "tools"}
META_FILENAME = "meta.json"
PARTIAL_SUFFIX = ".partial"


def machine_id() -> str:
    """Identity recorded on locks and audit events: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


def meta_lock_key(version_dir: str) -> str:
    """Lease key guarding a version directory's meta.json."""
    return f"{version_dir}/{META_FILENAME}"


class CacheStore:
    """
    Shared content cache with lease locking.

    Example:
        store = CacheStore.from_config(config)
        with store.locked(store.relative_path(entry), "download"):
            ...
        store.record_download(entry)
    """

    def __init__(
        self,
        paths: CachePaths,
        lock_ttl: float = 300.0,
        lock_wait_attempts: int = 10,
        lock_poll_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.paths = paths
        self.lock_ttl = float(lock_ttl)
        self.lock_wait_attempts = max(1, int(lock_wait_attempts))
        self.lock_poll_seconds = float(lock_poll_seconds)
        self.clock = clock
        self.sleep = sleep
        self.owner = machine_id()
        self._audit_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict, project_dir=None) -> 'CacheStore':
        cache = config.get('cache') or {}
        return cls(
            resolve_cache_paths(config, project_dir),
            lock_ttl=cache.get('lock_ttl_seconds', 300),
            lock_wait_attempts=cache.get('lock_wait_attempts', 10),
            lock_poll_seconds=cache.get('lock_poll_seconds', 0.5),
        )

    @property
    def root(self) -> Path:
        return self.paths.root

    def database(self) -> Database:
        return Database(self.paths.db_path)

    # -- Layout -----------------------------------------------------------

    def version_dir(self, entry: ResolvedEntry) -> str:
        """Cache-relative version directory, e.g. sources/uniprot/P01308@1.0."""
        spec = entry.spec
        kind_dir = KIND_DIRS.get(entry.kind)
        if kind_dir is None:
            raise CacheError(f"Unknown entry kind: {entry.kind}")
        return f"{kind_dir}/{spec.organization}/{spec.name}@{spec.version}"

    def relative_path(self, entry: ResolvedEntry) -> str:
        return f"{self.version_dir(entry)}/{entry.spec.name}.{entry.file_format}"

    def file_path(self, entry: ResolvedEntry) -> Path:
        return self.root / self.relative_path(entry)

    def partial_path(self, entry: ResolvedEntry) -> Path:
        path = self.file_path(entry)
        return path.with_name(path.name + PARTIAL_SUFFIX)

    def absolute(self, cache_path: str) -> Path:
        return self.root / cache_path

    # -- Entries ----------------------------------------------------------

    def get_entry(self, spec: str) -> Optional[CacheEntry]:
        with self.database() as db:
            return entries_db.get_entry(db, spec)

    def list_entries(self, kind: Optional[str] = None, order_by: str = "spec") -> List[CacheEntry]:
        with self.database() as db:
            return entries_db.list_entries(db, kind=kind, order_by=order_by)

    def is_cached(self, entry: ResolvedEntry) -> bool:
        """
        True when the tracking database holds this identity at the expected
        checksum and the file is on disk at the expected size.

        Full re-hashing is the auditor's job; this check is cheap enough to
        run for every member of a large aggregate.
        """
        return self._on_disk(entry, self.get_entry(entry.resolved_identity))

    def cached_entries(self, entries: Iterable[ResolvedEntry]) -> Set[str]:
        """
        Identities among ``entries`` that ``is_cached`` would accept, with
        one database connection for the whole batch.
        """
        entries = list(entries)
        with self.database() as db:
            rows = entries_db.get_entries(db, [e.resolved_identity for e in entries])
        return {
            e.resolved_identity for e in entries
            if self._on_disk(e, rows.get(e.resolved_identity))
        }

    def _on_disk(self, entry: ResolvedEntry, row: Optional[CacheEntry]) -> bool:
        if row is None or row.checksum != entry.checksum:
            return False
        path = self.absolute(row.cache_path)
        try:
            return path.stat().st_size == entry.size_bytes
        except OSError:
            return False

    def record_download(self, entry: ResolvedEntry) -> CacheEntry:
        """Create or refresh the CacheEntry and meta.json after a verified download."""
        now = self.clock()
        spec = entry.spec
        record = CacheEntry(
            spec=entry.resolved_identity,
            kind=entry.kind,
            organization=spec.organization,
            name=spec.name,
            version=spec.version,
            format=entry.file_format,
            checksum=entry.checksum,
            size_bytes=entry.size_bytes,
            cache_path=self.relative_path(entry),
            cached_at=now,
            last_accessed=now,
            external_version=entry.external_version,
            last_verified=now,
        )
        version_dir = self.version_dir(entry)
        # Formats of one version share meta.json
        with self.locked(meta_lock_key(version_dir), "meta"):
            meta = self._update_meta(entry)
            with self.database() as db:
                entries_db.upsert_entry(db, record)
                entries_db.upsert_version_metadata(db, version_dir, meta, now)
        return record

    def touch(self, spec: str) -> None:
        self.touch_many([spec])

    def touch_many(self, specs: Iterable[str]) -> None:
        """Record an access for each identity in one transaction."""
        specs = list(specs)
        if not specs:
            return
        with self.database() as db:
            entries_db.touch_entries(db, specs, self.clock())

    def refresh_stats(self) -> Dict[str, Dict[str, int]]:
        with self.database() as db:
            return entries_db.refresh_storage_stats(db, self.clock())

    def mark_verified(self, spec: str) -> None:
        with self.database() as db:
            entries_db.mark_verified(db, spec, self.clock())

    def _meta_path(self, version_dir: str) -> Path:
        return self.root / version_dir / META_FILENAME

    def read_meta(self, version_dir: str) -> Dict[str, Any]:
        path = self._meta_path(version_dir)
        if not path.exists():
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable {path}: {e}")
            return {}

    def _update_meta(self, entry: ResolvedEntry) -> Dict[str, Any]:
        version_dir = self.version_dir(entry)
        spec = entry.spec
        meta = self.read_meta(version_dir) or {
            'kind': entry.kind,
            'organization': spec.organization,
            'name': spec.name,
            'version': spec.version,
            'formats': [],
            'checksums': {},
            'sizes': {},
        }
        fmt = entry.file_format
        formats = set(meta.get('formats', []))
        formats.add(fmt)
        meta.setdefault("checksums", {})[fmt] = entry.checksum
        meta.setdefault("sizes", {})[fmt] = entry.size_bytes
        if entry.external_version:
            meta["external_version"] = entry.external_version
        meta["formats"] = sorted(formats)

        atomic_write_text(self._meta_path(version_dir), dump_json(meta))
        return meta

    # -- Locks ------------------------------------------------------------

    def try_lock(self, resource_path: str, operation: str) -> Optional[FileLock]:
        """One non-blocking attempt; None if someone else holds a live lease."""
        token = uuid.uuid4().hex
        with self.database() as db:
            result = locks_db.try_acquire(
                db, resource_path, self.owner, token, self.lock_ttl, operation, self.clock()
            )
        if result.stolen_from is not None:
            self.record_event(
                audit_db.LOCK_STEAL, cache_path=resource_path,
                previous_holder=result.stolen_from.locked_by,
                previous_operation=result.stolen_from.operation,
            )
        if result.acquired:
            logger.debug(f"Locked {resource_path} for {operation}")
            return result.lock
        return None

    def acquire_lock(self, resource_path: str, operation: str) -> FileLock:
        """
        Wait for the lease on ``resource_path`` with bounded polling.

        Raises:
            LockTimeoutError: after ``lock_wait_attempts`` failed attempts
        """
        attempts = [0]

        def attempt() -> FileLock:
            attempts[0] += 1
            lock = self.try_lock(resource_path, operation)
            if lock is None:
                holder = self.lock_holder(resource_path)
                raise LockTimeoutError(
                    resource_path, holder.locked_by if holder else None, attempts[0]
                )
            return lock

        policy = RetryPolicy.for_exceptions(
            (LockTimeoutError,),
            max_attempts=self.lock_wait_attempts,
            base_delay=self.lock_poll_seconds,
            max_delay=max(self.lock_poll_seconds, 5.0),
            multiplier=1.5,
            sleep=self.sleep,
        )
        return policy.call(attempt)

    def release_lock(self, lock: FileLock) -> bool:
        with self.database() as db:
            released = locks_db.release(db, lock.resource_path, lock.token)
        if not released:
            logger.warning(f"Lock on {lock.resource_path} was already gone at release")
        else:
            logger.debug(f"Released {lock.resource_path}")
        return released

    def renew_lock(self, lock: FileLock) -> bool:
        """Extend a held lease by a full TTL; False if it was lost."""
        now = self.clock()
        with self.database() as db:
            renewed = locks_db.renew(db, lock.resource_path, lock.token, self.lock_ttl, now)
        if renewed:
            lock.locked_at = now
            lock.ttl = self.lock_ttl
        return renewed

    def lock_holder(self, resource_path: str) -> Optional[FileLock]:
        with self.database() as db:
            return locks_db.get_lock(db, resource_path)

    def list_locks(self) -> List[FileLock]:
        with self.database() as db:
            return locks_db.list_locks(db)

    def sweep_locks(self) -> int:
        with self.database() as db:
            return locks_db.sweep_expired(db, self.clock())

    @contextmanager
    def locked(self, resource_path: str, operation: str) -> Generator[FileLock, None, None]:
        lock = self.acquire_lock(resource_path, operation)
        try:
            yield lock
        finally:
            self.release_lock(lock)

    # -- Audit ------------------------------------------------------------

    def record_event(self, event_type: str, cache_path: Optional[str] = None,
                     spec: Optional[str] = None, **details) -> AuditEvent:
        """Append an event to the audit_log table and to audit.log (JSONL)."""
        event = AuditEvent(
            event_type=event_type,
            timestamp=self.clock(),
            machine_id=self.owner,
            cache_path=cache_path,
            spec=spec,
            details=details,
        )
        with self.database() as db:
            audit_db.record_event(db, event)

        line = json.dumps(event.to_dict(), sort_keys=True)
        with self._audit_lock:
            self.paths.audit_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.paths.audit_log, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
        return event

    def events(self, **filters) -> List[AuditEvent]:
        with self.database() as db:
            return audit_db.get_events(db, **filters)

    # -- Maintenance ------------------------------------------------------

    def _remove(self, entries: Iterable[CacheEntry], operation: str, dry_run: bool) -> OperationSummary:
        summary = OperationSummary(operation=operation, dry_run=dry_run)
        for entry in entries:
            if dry_run:
                summary.add_detail(OperationDetail(
                    spec=entry.spec, path=entry.cache_path,
                    status=OperationStatus.DRY_RUN, action="would_remove",
                    metadata={'size': entry.size_bytes},
                ))
                summary.bytes += entry.size_bytes
                continue
            detail = self._remove_one(entry)
            if detail.status == OperationStatus.SUCCESS:
                summary.bytes += entry.size_bytes
            summary.add_detail(detail)

        if not dry_run and summary.successful:
            self.refresh_stats()
        logger.info(
            f"{operation}: {summary.successful} removed, {summary.skipped} skipped "
            f"({summary.bytes} bytes{' would be' if dry_run else ''} freed)"
        )
        return summary

    def _remove_one(self, entry: CacheEntry) -> OperationDetail:
        # Never wait: a held lock means a download or another cleanup is in flight
        lock = self.try_lock(entry.cache_path, "remove")
        if lock is None:
            holder = self.lock_holder(entry.cache_path)
            return OperationDetail(
                spec=entry.spec, path=entry.cache_path,
                status=OperationStatus.SKIPPED, action="locked",
                message=f"locked by {holder.locked_by}" if holder else "locked",
            )
        try:
            path = self.absolute(entry.cache_path)
            for candidate in (path, path.with_name(path.name + PARTIAL_SUFFIX)):
                try:
                    candidate.unlink()
                except FileNotFoundError:
                    pass

            version_dir = str(Path(entry.cache_path).parent.as_posix())
            with self.locked(meta_lock_key(version_dir), "meta"):
                meta = self.read_meta(version_dir)
                with self.database() as db:
                    entries_db.delete_entry(db, entry.spec)
                    if meta:
                        self._drop_format(version_dir, meta, entry.format, db)
            self._prune_dirs(path.parent)
            self.record_event(audit_db.REMOVE, cache_path=entry.cache_path, spec=entry.spec,
                              size=entry.size_bytes)
            return OperationDetail(
                spec=entry.spec, path=entry.cache_path,
                status=OperationStatus.SUCCESS, action="removed",
                metadata={'size': entry.size_bytes},
            )
        except (OSError, LockTimeoutError) as e:
            return OperationDetail(
                spec=entry.spec, path=entry.cache_path,
                status=OperationStatus.FAILED, action="remove", error=str(e),
            )
        finally:
            self.release_lock(lock)

    def _drop_format(self, version_dir: str, meta: Dict[str, Any], fmt: str, db: Database) -> None:
        """Caller holds the meta.json lease."""
        meta['formats'] = sorted(set(meta.get('formats', [])) - {fmt})
        meta.get('checksums', {}).pop(fmt, None)
        meta.get('sizes', {}).pop(fmt, None)
        path = self._meta_path(version_dir)
        if meta['formats']:
            atomic_write_text(path, dump_json(meta))
            entries_db.upsert_version_metadata(db, version_dir, meta, self.clock())
        else:
            if path.exists():
                path.unlink()
            entries_db.delete_version_metadata(db, version_dir)

    def _prune_dirs(self, directory: Path) -> None:
        """Remove empty directories up to (not including) the kind directory."""
        root = self.root.resolve()
        current = directory
        while True:
            try:
                resolved = current.resolve()
            except OSError:
                return
            if resolved == root or resolved.parent == root:
                return
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    def remove_spec(self, spec: str, dry_run: bool = False) -> OperationSummary:
        """Remove one cached identity (a bare spec matches every format)."""
        matches = [e for e in self.list_entries() if e.spec == spec or _same_version(e, spec)]
        return self._remove(matches, "remove", dry_run)

    def remove_unreferenced(self, referenced: Set[str], dry_run: bool = False) -> OperationSummary:
        """Remove every entry whose identity is not in ``referenced``."""
        stale = [e for e in self.list_entries() if e.spec not in referenced]
        return self._remove(stale, "remove_unreferenced", dry_run)

    def remove_older_than(self, seconds: float, dry_run: bool = False) -> OperationSummary:
        cutoff = self.clock() - seconds
        with self.database() as db:
            old = entries_db.entries_cached_before(db, cutoff)
        return self._remove(old, "remove_older_than", dry_run)

    def remove_all(self, dry_run: bool = False) -> OperationSummary:
        return self._remove(self.list_entries(), "remove_all", dry_run)

    def evict_to_size(self, max_bytes: int, dry_run: bool = False) -> OperationSummary:
        """
        Remove least-recently-accessed entries until the cache is at or
        under ``max_bytes``. Locked entries are skipped, not waited on.
        """
        summary = OperationSummary(operation="evict", dry_run=dry_run)
        entries = self.list_entries(order_by="last_accessed")
        total = sum(e.size_bytes for e in entries)

        for entry in entries:
            if total <= max_bytes:
                break
            if dry_run:
                detail = OperationDetail(
                    spec=entry.spec, path=entry.cache_path,
                    status=OperationStatus.DRY_RUN, action="would_remove",
                    metadata={'size': entry.size_bytes},
                )
            else:
                detail = self._remove_one(entry)
            if detail.status in (OperationStatus.SUCCESS, OperationStatus.DRY_RUN):
                total -= entry.size_bytes
                summary.bytes += entry.size_bytes
            summary.add_detail(detail)

        if not dry_run and summary.successful:
            self.refresh_stats()
        if total > max_bytes:
            logger.warning(f"Cache still {total} bytes after eviction (budget {max_bytes}); some entries are locked")
        return summary

    def stats(self) -> Dict[str, Any]:
        with self.database() as db:
            per_kind = entries_db.refresh_storage_stats(db, self.clock())
            locks = locks_db.list_locks(db)
            events = audit_db.count_events_by_type(db)

        now = self.clock()
        return {
            'root': str(self.root),
            'database': str(self.paths.db_path),
            'shared': self.paths.shared,
            'entries': sum(s['entry_count'] for s in per_kind.values()),
            'total_bytes': sum(s['total_bytes'] for s in per_kind.values()),
            'by_kind': per_kind,
            'active_locks': sum(1 for lock in locks if not lock.is_expired(now)),
            'expired_locks': sum(1 for lock in locks if lock.is_expired(now)),
            'events': events,
        }


def _same_version(entry: CacheEntry, spec: str) -> bool:
    """A format-less spec string matches every cached format of that version."""
    try:
        parsed = parse_spec(spec)
    except ParseError:
        return False
    if parsed.format is not None:
        return False
    return (entry.organization, entry.name, entry.version) == (parsed.organization, parsed.name, parsed.version)


class LockSweeper:
    """
    Background thread deleting expired leases while a long operation runs.

    Usage:
        with LockSweeper(store, interval=60):
            orchestrator.run(...)
    """

    def __init__(self, store: CacheStore, interval: float = 60.0):
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None or self.interval <= 0:
            return
        self._thread = threading.Thread(target=self._run, name="bdp-lock-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.store.sweep_locks()
            except Exception as e:
                logger.warning(f"Lock sweep failed: {e}")

    def __enter__(self) -> 'LockSweeper':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
