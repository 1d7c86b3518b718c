"""
Tests for the cache store: layout, tracking database, lease locks and
cleanup.
"""

import json
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from bdp.config import CachePaths, resolve_cache_paths
from bdp.database import entries as entries_db
from bdp.database import locks as locks_db
from bdp.database.connection import Database
from bdp.domain.operation import OperationStatus
from bdp.errors import LockTimeoutError
from bdp.services.cache_service import CacheStore, LockSweeper, meta_lock_key

from fakes import cache_paths, make_entry


class Clock:
    """Settable clock for lease expiry and LRU ordering."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CacheTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.base = Path(self.temp_dir)
        self.clock = Clock()
        self.sleeps = []
        self.store = self.make_store()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_store(self, **kwargs) -> CacheStore:
        kwargs.setdefault('lock_ttl', 60)
        kwargs.setdefault('lock_wait_attempts', 3)
        kwargs.setdefault('lock_poll_seconds', 0.1)
        return CacheStore(cache_paths(self.base), clock=self.clock, sleep=self.sleeps.append, **kwargs)

    def cache_file(self, spec: str, data: bytes, kind: str = "source"):
        """Put ``data`` in the cache as if it had just been downloaded."""
        entry = make_entry(spec, data, kind)
        path = self.store.file_path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        self.store.record_download(entry)
        return entry


class TestLayout(CacheTestCase):

    def test_paths_follow_layout(self):
        entry = make_entry("uniprot:P01308-fasta@1.0", b"x")
        self.assertEqual(self.store.relative_path(entry), "sources/uniprot/P01308@1.0/P01308.fasta")
        self.assertEqual(self.store.partial_path(entry).name, "P01308.fasta.partial")

    def test_tools_and_default_format(self):
        entry = make_entry("ncbi:blast@2.14.0", b"x", kind="tool")
        self.assertEqual(self.store.relative_path(entry), "tools/ncbi/blast@2.14.0/blast.bin")

    def test_record_download_writes_meta_and_row(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        entry = self.cache_file("uniprot:P01308-xml@1.0", b"<xml/>")

        meta = json.loads((self.store.root / "sources/uniprot/P01308@1.0/meta.json").read_text())
        self.assertEqual(meta['formats'], ["fasta", "xml"])
        self.assertEqual(meta['sizes']['xml'], 6)
        self.assertEqual(meta['external_version'], "2025_01")

        with self.store.database() as db:
            mirrored = entries_db.get_version_metadata(db, "sources/uniprot/P01308@1.0")
        self.assertEqual(mirrored["formats"], ["fasta", "xml"])
        self.assertEqual(mirrored["external_version"], "2025_01")

        row = self.store.get_entry("uniprot:P01308-xml@1.0")
        self.assertEqual(row.checksum, entry.checksum)
        self.assertEqual(row.cache_path, "sources/uniprot/P01308@1.0/P01308.xml")

    def test_is_cached_checks_checksum_and_size(self):
        entry = self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        self.assertTrue(self.store.is_cached(entry))

        self.store.file_path(entry).write_bytes(b"short")
        self.assertFalse(self.store.is_cached(entry))

        self.assertFalse(self.store.is_cached(make_entry("uniprot:P01308-fasta@1.0", b"other bytes")))

    def test_touch_updates_access(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"x")
        self.clock.now += 100
        self.store.touch("uniprot:P01308-fasta@1.0")
        row = self.store.get_entry("uniprot:P01308-fasta@1.0")
        self.assertEqual(row.last_accessed, self.clock.now)
        self.assertEqual(row.access_count, 1)

    def test_touch_many_in_one_call(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"x")
        self.cache_file("uniprot:P01315-fasta@1.0", b"y")
        self.clock.now += 100
        self.store.touch_many(["uniprot:P01308-fasta@1.0", "uniprot:P01315-fasta@1.0", "uniprot:gone@1"])
        for spec in ("uniprot:P01308-fasta@1.0", "uniprot:P01315-fasta@1.0"):
            row = self.store.get_entry(spec)
            self.assertEqual(row.last_accessed, self.clock.now)
            self.assertEqual(row.access_count, 1)

    def test_cached_entries_matches_is_cached(self):
        good = self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        short = self.cache_file("uniprot:P01315-fasta@1.0", b"pig bytes")
        self.store.file_path(short).write_bytes(b"pig")
        unknown = make_entry("uniprot:P01317-fasta@1.0", b"cow")
        stale = make_entry("uniprot:P01308-xml@1.0", b"<xml/>")

        present = self.store.cached_entries([good, short, unknown, stale])
        self.assertEqual(present, {"uniprot:P01308-fasta@1.0"})
        self.assertEqual(present, {e.resolved_identity for e in (good, short, unknown, stale)
                                   if self.store.is_cached(e)})

    def test_record_download_leaves_stats_to_batch_refresh(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"12345")
        with self.store.database() as db:
            db.execute("SELECT COUNT(*) AS n FROM storage_stats")
            self.assertEqual(db.fetchone()["n"], 0)
        self.assertEqual(self.store.refresh_stats(), {"source": {"entry_count": 1, "total_bytes": 5}})

    def test_meta_lease_is_released(self):
        entry = self.cache_file("uniprot:P01308-fasta@1.0", b"x")
        self.assertIsNone(self.store.lock_holder(meta_lock_key(self.store.version_dir(entry))))
        self.assertEqual(self.store.list_locks(), [])

    def test_audit_events_go_to_db_and_log(self):
        self.store.record_event("verify", cache_path="sources/a/b@1/b.bin", spec="a:b@1", checksum="sha256-x")
        events = self.store.events(event_type="verify")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].details, {'checksum': "sha256-x"})

        lines = self.store.paths.audit_log.read_text().splitlines()
        self.assertEqual(json.loads(lines[-1])['event'], "verify")


class TestLeaseLocks(CacheTestCase):

    def test_only_one_holder(self):
        other = self.make_store()
        lock = self.store.try_lock("sources/a/b@1/b.bin", "download")
        self.assertIsNotNone(lock)
        self.assertIsNone(other.try_lock("sources/a/b@1/b.bin", "download"))

        self.assertTrue(self.store.release_lock(lock))
        self.assertIsNotNone(other.try_lock("sources/a/b@1/b.bin", "download"))

    def test_expired_lease_is_taken_over(self):
        other = self.make_store()
        stale = self.store.try_lock("sources/a/b@1/b.bin", "download")
        self.clock.now += 61

        lock = other.try_lock("sources/a/b@1/b.bin", "remove")
        self.assertIsNotNone(lock)
        self.assertEqual(lock.operation, "remove")
        self.assertEqual(len(self.store.events(event_type="lock_steal")), 1)

        # The previous holder no longer owns it
        self.assertFalse(self.store.release_lock(stale))
        self.assertFalse(self.store.renew_lock(stale))
        self.assertEqual(self.store.lock_holder("sources/a/b@1/b.bin").token, lock.token)

    def test_renew_extends_lease(self):
        lock = self.store.try_lock("sources/a/b@1/b.bin", "download")
        self.clock.now += 50
        self.assertTrue(self.store.renew_lock(lock))
        self.clock.now += 50
        self.assertIsNone(self.make_store().try_lock("sources/a/b@1/b.bin", "download"))

    def test_acquire_gives_up_after_budget(self):
        self.make_store().try_lock("sources/a/b@1/b.bin", "download")
        with self.assertRaises(LockTimeoutError) as ctx:
            self.store.acquire_lock("sources/a/b@1/b.bin", "download")
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertEqual(ctx.exception.exit_code, 75)

    def test_locked_context_releases(self):
        with self.store.locked("sources/a/b@1/b.bin", "download"):
            self.assertIsNotNone(self.store.lock_holder("sources/a/b@1/b.bin"))
        self.assertIsNone(self.store.lock_holder("sources/a/b@1/b.bin"))

    def test_sweep_removes_only_expired(self):
        self.store.try_lock("old", "download")
        self.clock.now += 30
        self.store.try_lock("new", "download")
        self.clock.now += 31

        self.assertEqual(self.store.sweep_locks(), 1)
        self.assertEqual([lock.resource_path for lock in self.store.list_locks()], ["new"])

    def test_try_acquire_row_level(self):
        with Database(self.store.paths.db_path) as db:
            first = locks_db.try_acquire(db, "p", "host:1", "t1", 10, "download", 100.0)
        with Database(self.store.paths.db_path) as db:
            second = locks_db.try_acquire(db, "p", "host:2", "t2", 10, "download", 105.0)
        self.assertTrue(first.acquired)
        self.assertFalse(second.acquired)
        self.assertEqual(second.lock.locked_by, "host:1")

    def test_sweeper_thread_stops(self):
        sweeper = LockSweeper(self.store, interval=0.01)
        with sweeper:
            pass
        self.assertIsNone(sweeper._thread)


class TestCleanup(CacheTestCase):

    def test_locked_file_is_skipped(self):
        entry = self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        other = self.make_store()
        other.try_lock(self.store.relative_path(entry), "download")

        summary = self.store.remove_all()
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.details[0].action, "locked")
        self.assertTrue(self.store.file_path(entry).exists())
        self.assertIsNotNone(self.store.get_entry(entry.resolved_identity))

    def test_remove_all_deletes_files_rows_and_dirs(self):
        entry = self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        summary = self.store.remove_all()
        self.assertEqual(summary.successful, 1)
        self.assertEqual(summary.bytes, len(b"fasta bytes"))
        self.assertFalse(self.store.file_path(entry).exists())
        self.assertFalse((self.store.root / "sources/uniprot").exists())
        self.assertEqual(self.store.list_entries(), [])
        self.assertEqual(len(self.store.events(event_type="remove")), 1)

    def test_dry_run_changes_nothing(self):
        entry = self.cache_file("uniprot:P01308-fasta@1.0", b"fasta bytes")
        summary = self.store.remove_all(dry_run=True)
        self.assertEqual(summary.details[0].status, OperationStatus.DRY_RUN)
        self.assertTrue(self.store.file_path(entry).exists())
        self.assertEqual(len(self.store.list_entries()), 1)

    def test_removing_one_format_keeps_the_other(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"fasta")
        self.cache_file("uniprot:P01308-xml@1.0", b"<xml/>")
        self.store.remove_spec("uniprot:P01308-fasta@1.0")

        meta = json.loads((self.store.root / "sources/uniprot/P01308@1.0/meta.json").read_text())
        self.assertEqual(meta['formats'], ["xml"])
        self.assertEqual([e.spec for e in self.store.list_entries()], ["uniprot:P01308-xml@1.0"])

    def test_bare_spec_matches_every_format(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"fasta")
        self.cache_file("uniprot:P01308-xml@1.0", b"<xml/>")
        self.cache_file("uniprot:P01315-fasta@1.0", b"pig")
        summary = self.store.remove_spec("uniprot:P01308@1.0")
        self.assertEqual(summary.successful, 2)
        self.assertEqual([e.spec for e in self.store.list_entries()], ["uniprot:P01315-fasta@1.0"])

    def test_remove_unreferenced(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"keep")
        self.cache_file("uniprot:P01315-fasta@1.0", b"drop")
        summary = self.store.remove_unreferenced({"uniprot:P01308-fasta@1.0"})
        self.assertEqual([d.spec for d in summary.details], ["uniprot:P01315-fasta@1.0"])

    def test_remove_older_than(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"old")
        self.clock.now += 86400 * 10
        self.cache_file("uniprot:P01315-fasta@1.0", b"new")
        summary = self.store.remove_older_than(86400 * 5)
        self.assertEqual([d.spec for d in summary.details], ["uniprot:P01308-fasta@1.0"])

    def test_lru_eviction(self):
        self.cache_file("org:a-bin@1", b"a" * 10)
        self.clock.now += 10
        self.cache_file("org:b-bin@1", b"b" * 10)
        self.clock.now += 10
        self.cache_file("org:c-bin@1", b"c" * 10)
        self.clock.now += 10
        self.store.touch("org:a-bin@1")

        summary = self.store.evict_to_size(20)
        self.assertEqual([d.spec for d in summary.details], ["org:b-bin@1"])
        self.assertEqual(sorted(e.spec for e in self.store.list_entries()), ["org:a-bin@1", "org:c-bin@1"])

    def test_eviction_skips_locked_and_keeps_going(self):
        first = self.cache_file("org:a-bin@1", b"a" * 10)
        self.clock.now += 10
        self.cache_file("org:b-bin@1", b"b" * 10)
        self.make_store().try_lock(self.store.relative_path(first), "download")

        summary = self.store.evict_to_size(10)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.successful, 1)
        self.assertEqual([e.spec for e in self.store.list_entries()], ["org:a-bin@1"])

    def test_stats(self):
        self.cache_file("uniprot:P01308-fasta@1.0", b"12345")
        self.cache_file("ncbi:blast@2.14.0", b"123", kind="tool")
        self.store.try_lock("sources/x", "download")

        stats = self.store.stats()
        self.assertEqual(stats['entries'], 2)
        self.assertEqual(stats['total_bytes'], 8)
        self.assertEqual(stats['by_kind']['tool'], {'entry_count': 1, 'total_bytes': 3})
        self.assertEqual(stats['active_locks'], 1)
        self.assertFalse(stats['shared'])


class TestSharedRoot(unittest.TestCase):

    def test_shared_root_layout(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('BDP_DB', None)
            paths = resolve_cache_paths({'cache': {'root': '/shared/bdp'}}, '/work/project')
        self.assertEqual(paths, CachePaths(
            root=Path('/shared/bdp'),
            db_path=Path('/shared/bdp/bdp.db'),
            audit_log=Path('/shared/bdp/audit.log'),
            shared=True,
        ))


class TestConcurrentAccess(unittest.TestCase):
    """Several CacheStores over one database, driven from real threads."""

    RESOURCE = "sources/uniprot/P01308@1.0/P01308.fasta"

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.base = Path(self.temp_dir)
        # Create the schema before the threads race for it
        self.make_store().list_locks()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_store(self) -> CacheStore:
        return CacheStore(cache_paths(self.base), lock_ttl=60, lock_wait_attempts=200,
                          lock_poll_seconds=0.005)

    def run_threads(self, target, count):
        errors = []

        def guarded():
            try:
                target()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=guarded) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        self.assertEqual(errors, [])

    def test_try_lock_never_has_two_holders(self):
        guard = threading.Lock()
        state = {'active': 0, 'peak': 0, 'acquired': 0}

        def contend():
            store = self.make_store()
            for _ in range(25):
                lock = store.try_lock(self.RESOURCE, "download")
                if lock is None:
                    continue
                with guard:
                    state['active'] += 1
                    state['acquired'] += 1
                    state['peak'] = max(state['peak'], state['active'])
                time.sleep(0.002)
                with guard:
                    state['active'] -= 1
                self.assertTrue(store.release_lock(lock))

        self.run_threads(contend, 6)
        self.assertEqual(state['peak'], 1)
        self.assertGreater(state['acquired'], 0)
        self.assertIsNone(self.make_store().lock_holder(self.RESOURCE))

    def test_waiting_acquirers_take_turns(self):
        guard = threading.Lock()
        holders = []
        state = {'active': 0, 'peak': 0}

        def take_turn():
            store = self.make_store()
            with store.locked(self.RESOURCE, "download") as lock:
                with guard:
                    state['active'] += 1
                    state['peak'] = max(state['peak'], state['active'])
                    holders.append(lock.token)
                time.sleep(0.01)
                with guard:
                    state['active'] -= 1

        self.run_threads(take_turn, 4)
        self.assertEqual(state['peak'], 1)
        self.assertEqual(len(set(holders)), 4)

    def test_parallel_formats_keep_both_in_meta(self):
        fasta = make_entry("uniprot:P01308-fasta@1.0", b"fasta bytes")
        xml = make_entry("uniprot:P01308-xml@1.0", b"<xml/>")
        stores = [self.make_store(), self.make_store()]
        for store, entry, data in zip(stores, (fasta, xml), (b"fasta bytes", b"<xml/>")):
            path = store.file_path(entry)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        read_meta = CacheStore.read_meta

        def slow_read_meta(store, version_dir):
            meta = read_meta(store, version_dir)
            # Widen the read-modify-write window
            time.sleep(0.05)
            return meta

        pending = list(zip(stores, (fasta, xml)))
        picker = threading.Lock()

        def record():
            with picker:
                store, entry = pending.pop()
            store.record_download(entry)

        with patch.object(CacheStore, 'read_meta', slow_read_meta):
            self.run_threads(record, 2)

        version_dir = "sources/uniprot/P01308@1.0"
        meta = json.loads((stores[0].root / version_dir / "meta.json").read_text())
        self.assertEqual(meta['formats'], ["fasta", "xml"])
        self.assertEqual(sorted(meta['checksums']), ["fasta", "xml"])
        with stores[0].database() as db:
            mirrored = entries_db.get_version_metadata(db, version_dir)
        self.assertEqual(mirrored['formats'], ["fasta", "xml"])
