"""
Download service for bdp.

DownloadOrchestrator fetches every file a resolution needs that is not
already in the cache:

- a bounded worker pool, smallest files first
- one lease lock per destination path, renewed while streaming
- resume from the ``.partial`` file's byte offset with a Range request
- a rolling sha256 checked before the file is renamed into place

Failures are isolated per file: a checksum mismatch, an exhausted lock
wait or a registry error marks that one file failed or deferred and the
rest of the batch carries on.
"""

import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from ..checksum import CHUNK_SIZE, format_checksum
from ..database import audit as audit_db
from ..domain.entry import ResolvedEntry
from ..domain.operation import DownloadResult, OperationStatus, OperationSummary
from ..domain.records import FileLock
from ..errors import (
    ChecksumMismatchError,
    LockTimeoutError,
    PartialDownloadError,
    RegistryError,
)
from ..exit_codes import CommandError, PartialSuccessError, TRANSIENT_FAILURE
from ..retry import RetryPolicy
from .cache_service import CacheStore, LockSweeper

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_CHECKSUM_RETRIES = 1
DEFAULT_RESUME_RETRIES = 5


@dataclass
class _Progress:
    """Counters carried across the retries of one file."""
    attempts: int = 0
    transferred: int = 0
    first_offset: Optional[int] = None


class DownloadOrchestrator:
    """
    Download missing cache entries in parallel.

    Example:
        orchestrator = DownloadOrchestrator(client, store, concurrency=8)
        summary = orchestrator.run(resolution.files())
    """

    def __init__(
        self,
        registry,
        store: CacheStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        checksum_retries: int = DEFAULT_CHECKSUM_RETRIES,
        resume_retries: int = DEFAULT_RESUME_RETRIES,
        chunk_size: int = CHUNK_SIZE,
        sweep_interval: float = 60.0,
    ):
        self.registry = registry
        self.store = store
        self.concurrency = max(1, int(concurrency))
        # Re-downloads start at once; opening the stream has its own backoff
        self.checksum_retry = RetryPolicy.for_exceptions(
            (ChecksumMismatchError,), max_attempts=max(0, int(checksum_retries)) + 1, base_delay=0.0,
        )
        self.resume_retry = RetryPolicy.for_exceptions(
            (PartialDownloadError,), max_attempts=max(0, int(resume_retries)) + 1, base_delay=0.0,
        )
        self.chunk_size = int(chunk_size)
        self.sweep_interval = sweep_interval

    @classmethod
    def from_config(cls, registry, store: CacheStore, config: dict) -> 'DownloadOrchestrator':
        download = config.get('download') or {}
        cache = config.get('cache') or {}
        return cls(
            registry,
            store,
            concurrency=download.get('concurrency', DEFAULT_CONCURRENCY),
            checksum_retries=download.get('checksum_retries', DEFAULT_CHECKSUM_RETRIES),
            resume_retries=download.get('resume_retries', DEFAULT_RESUME_RETRIES),
            chunk_size=download.get('chunk_size', CHUNK_SIZE),
            sweep_interval=cache.get('sweep_interval_seconds', 60),
        )

    # -- Planning ---------------------------------------------------------

    def plan(self, entries: Iterable[ResolvedEntry],
             force: bool = False) -> Tuple[List[ResolvedEntry], List[ResolvedEntry]]:
        """
        Split entries into (to_download, already_cached).

        With ``force`` every entry is downloaded again (repairing files
        whose bytes went bad after they were cached).

        Aggregates have no bytes of their own and are dropped; duplicates
        collapse by resolved identity. Downloads are ordered smallest first.
        """
        unique: Dict[str, ResolvedEntry] = {}
        for entry in entries:
            if entry.has_dependencies:
                continue
            unique.setdefault(entry.resolved_identity, entry)

        present = set() if force else self.store.cached_entries(unique.values())
        pending: List[ResolvedEntry] = []
        cached: List[ResolvedEntry] = []
        for entry in unique.values():
            if entry.resolved_identity in present:
                cached.append(entry)
            else:
                pending.append(entry)

        pending.sort(key=lambda e: (e.size_bytes, e.resolved_identity))
        cached.sort(key=lambda e: e.resolved_identity)
        return pending, cached

    # -- Running ----------------------------------------------------------

    def run(self, entries: Iterable[ResolvedEntry], force: bool = False,
            on_complete: Optional[Callable[[int, DownloadResult], None]] = None) -> OperationSummary:
        """
        Download everything in ``entries`` that is not cached yet.

        ``on_complete(done, result)`` is called from the calling thread as
        each file finishes.
        """
        pending, cached = self.plan(entries, force=force)
        summary = OperationSummary(operation="download")

        self.store.touch_many(e.resolved_identity for e in cached)
        for entry in cached:
            summary.add_detail(DownloadResult(
                spec=entry.resolved_identity,
                path=self.store.relative_path(entry),
                status=OperationStatus.SKIPPED,
                action="cached",
            ))

        if not pending:
            logger.info(f"All {len(cached)} files already cached")
            return summary

        total_bytes = sum(e.size_bytes for e in pending)
        logger.info(
            f"Downloading {len(pending)} files ({total_bytes} bytes) with "
            f"{min(self.concurrency, len(pending))} workers; {len(cached)} already cached"
        )

        done = 0
        with LockSweeper(self.store, self.sweep_interval):
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="bdp-download") as pool:
                futures = {pool.submit(self.download_one, entry, force): entry for entry in pending}
                for future in as_completed(futures):
                    entry = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.error(f"Download worker for {entry.resolved_identity} crashed: {e}")
                        result = DownloadResult(
                            spec=entry.resolved_identity,
                            path=self.store.relative_path(entry),
                            status=OperationStatus.FAILED,
                            action="download",
                            error=str(e),
                        )
                    summary.add_detail(result)
                    summary.bytes += result.bytes_transferred
                    done += 1
                    if on_complete is not None:
                        on_complete(done, result)

        if summary.successful:
            self.store.refresh_stats()
        logger.info(
            f"Download finished: {summary.successful} downloaded, {summary.skipped} skipped, "
            f"{summary.failed} failed, {summary.deferred} deferred ({summary.bytes} bytes)"
        )
        return summary

    def download_one(self, entry: ResolvedEntry, force: bool = False) -> DownloadResult:
        """Download one file under its lease lock; never raises for per-file failures."""
        rel = self.store.relative_path(entry)
        identity = entry.resolved_identity

        try:
            lock = self.store.acquire_lock(rel, "download")
        except LockTimeoutError as e:
            logger.warning(f"Deferring {identity}: {e}")
            return DownloadResult(spec=identity, path=rel, status=OperationStatus.DEFERRED,
                                  action="locked", error=str(e), attempts=e.attempts)

        try:
            # Another process may have finished it while we waited
            if not force and self.store.is_cached(entry):
                self.store.touch(identity)
                return DownloadResult(spec=identity, path=rel, status=OperationStatus.SKIPPED,
                                      action="cached")

            self.store.record_event(audit_db.DOWNLOAD_START, cache_path=rel, spec=identity,
                                    size=entry.size_bytes)
            result = self._transfer(entry, lock)
            self.store.record_download(entry)
            self.store.record_event(audit_db.DOWNLOAD_SUCCESS, cache_path=rel, spec=identity,
                                    bytes=result.bytes_transferred, resumed_from=result.resumed_from,
                                    checksum=entry.checksum)
            return result

        except LockTimeoutError as e:
            # Lease lost mid-transfer; the new holder owns the partial file now
            self.store.record_event(audit_db.DOWNLOAD_FAILURE, cache_path=rel, spec=identity, error=str(e))
            return DownloadResult(spec=identity, path=rel, status=OperationStatus.DEFERRED,
                                  action="locked", error=str(e))
        except (ChecksumMismatchError, PartialDownloadError, RegistryError, OSError) as e:
            logger.error(f"Failed to download {identity}: {e}")
            self.store.record_event(audit_db.DOWNLOAD_FAILURE, cache_path=rel, spec=identity,
                                    error=str(e), error_type=type(e).__name__)
            return DownloadResult(spec=identity, path=rel, status=OperationStatus.FAILED,
                                  action="download", error=str(e))
        finally:
            self.store.release_lock(lock)

    # -- Transfer ---------------------------------------------------------

    def _transfer(self, entry: ResolvedEntry, lock: FileLock) -> DownloadResult:
        """
        Stream ``entry`` into its .partial file and move it into place.

        A stopped transfer resumes from the bytes already on disk
        (``resume_retry``); a finished transfer whose hash is wrong starts
        over from byte 0 (``checksum_retry``).
        """
        progress = _Progress()
        return self.checksum_retry.call(self._verified_pass, entry, lock, progress)

    def _verified_pass(self, entry: ResolvedEntry, lock: FileLock, progress: _Progress) -> DownloadResult:
        rel = self.store.relative_path(entry)
        partial = self.store.partial_path(entry)

        hasher = self.resume_retry.call(self._resume, entry, lock, progress)

        actual = format_checksum(hasher.hexdigest())
        size = partial.stat().st_size
        if size != entry.size_bytes or actual != entry.checksum:
            partial.unlink()
            logger.debug(f"{rel}: {size} bytes hashing to {actual}")
            raise ChecksumMismatchError(rel, entry.checksum, actual)

        os.replace(partial, self.store.file_path(entry))
        logger.debug(f"{rel}: verified {actual}")
        return DownloadResult(
            spec=entry.resolved_identity,
            path=rel,
            status=OperationStatus.SUCCESS,
            action="downloaded",
            bytes_transferred=progress.transferred,
            resumed_from=progress.first_offset or 0,
            attempts=progress.attempts,
        )

    def _resume(self, entry: ResolvedEntry, lock: FileLock, progress: _Progress):
        """Bring the .partial file up to the expected size; returns its hasher."""
        rel = self.store.relative_path(entry)
        partial = self.store.partial_path(entry)
        partial.parent.mkdir(parents=True, exist_ok=True)
        expected = entry.size_bytes

        progress.attempts += 1
        offset = partial.stat().st_size if partial.exists() else 0
        if offset > expected:
            logger.warning(f"{rel}: partial file is larger than expected; starting over")
            partial.unlink()
            offset = 0
        if progress.first_offset is None:
            progress.first_offset = offset
        if offset:
            logger.debug(f"{rel}: resuming at byte {offset} of {expected}")

        hasher = _hash_prefix(partial, offset, self.chunk_size)
        if offset < expected or expected == 0:
            hasher = self._stream(entry, lock, partial, offset, hasher, progress)
        return hasher

    def _stream(self, entry: ResolvedEntry, lock: FileLock, partial: Path, offset: int,
                hasher, progress: _Progress):
        """
        Append the rest of the file to ``partial``.

        Returns the updated hasher; bytes written are added to ``progress``.

        Raises:
            PartialDownloadError: if the connection drops before the last byte
            LockTimeoutError: if the lease was lost while streaming
        """
        rel = self.store.relative_path(entry)
        stream = self.registry.open_download(entry, offset)
        try:
            if stream.start != offset:
                hasher = hashlib.sha256()
                mode = 'wb'
                position = stream.start
            else:
                mode = 'ab'
                position = offset

            renew_every = max(self.store.lock_ttl / 3.0, 1.0)
            last_renew = self.store.clock()

            with open(partial, mode) as f:
                try:
                    for chunk in stream.iter_content(self.chunk_size):
                        if not chunk:
                            continue
                        f.write(chunk)
                        hasher.update(chunk)
                        progress.transferred += len(chunk)
                        position += len(chunk)
                        if position > entry.size_bytes:
                            break

                        now = self.store.clock()
                        if now - last_renew >= renew_every:
                            if not self.store.renew_lock(lock):
                                raise LockTimeoutError(rel, None, 0)
                            last_renew = now
                except (requests.RequestException, ConnectionError) as e:
                    f.flush()
                    raise PartialDownloadError(rel, position, entry.size_bytes, str(e)) from e

            if position < entry.size_bytes:
                raise PartialDownloadError(rel, position, entry.size_bytes, "connection closed early")
            return hasher
        finally:
            stream.close()


def _hash_prefix(path: Path, length: int, chunk_size: int):
    """sha256 state over the first ``length`` bytes of ``path``."""
    hasher = hashlib.sha256()
    if length <= 0:
        return hasher
    remaining = length
    with open(path, 'rb') as f:
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            hasher.update(chunk)
            remaining -= len(chunk)
    return hasher


def summarize_failures(summary: OperationSummary) -> Optional[CommandError]:
    """
    The error a CLI command should exit with for a finished batch, or None.

    Any failed or deferred file makes the batch a transient failure: the
    command is safe to re-run and will pick up where it stopped.
    """
    if summary.success:
        return None
    return PartialSuccessError(
        f"{summary.failed} failed and {summary.deferred} deferred of {summary.total} files; "
        f"re-run the command to retry",
        succeeded=summary.successful + summary.skipped,
        failed=summary.failed + summary.deferred,
        exit_code=TRANSIENT_FAILURE,
    )
