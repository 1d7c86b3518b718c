"""
Integrity audit service for bdp.

IntegrityAuditor re-hashes every cached file the lockfile pins (direct
entries, plus the members of each aggregate as listed in the local
dependency-tree cache) and reports it as verified, corrupted or missing.

The audit only reads. Each outcome is written to the audit log and
verified files get their ``last_verified`` stamp; fixing anything is left
to an explicit repair, which re-downloads through the orchestrator.
"""

import logging
from typing import Dict, List, Optional, Tuple

from ..checksum import CHUNK_SIZE, compute_file_checksum
from ..database import audit as audit_db
from ..domain.entry import ResolvedEntry
from ..domain.operation import AuditSummary, OperationSummary, VerifyResult, VerifyStatus
from ..domain.spec import parse_spec
from ..lockfile import Lockfile
from .cache_service import CacheStore
from .resolver_service import SECTION_KINDS

logger = logging.getLogger(__name__)


class IntegrityAuditor:
    """
    Verify cached files against the checksums pinned for a project.

    Example:
        auditor = IntegrityAuditor(store, TreeCache(tree_cache_path()))
        summary = auditor.verify(load_lockfile())
        if not summary.success:
            auditor.repair(load_lockfile(), summary, orchestrator)
    """

    def __init__(self, store: CacheStore, tree_cache=None, chunk_size: int = CHUNK_SIZE):
        self.store = store
        self.tree_cache = tree_cache
        self.chunk_size = chunk_size

    def targets(self, lockfile: Lockfile) -> List[ResolvedEntry]:
        """Every file the lockfile implies, deduplicated and sorted by identity."""
        found: Dict[str, ResolvedEntry] = {}

        for section, spec, locked in lockfile.entries():
            kind = SECTION_KINDS[section]
            if not locked.is_aggregate:
                entry = ResolvedEntry(
                    spec=parse_spec(spec),
                    resolved_identity=locked.resolved,
                    checksum=locked.checksum,
                    size_bytes=locked.size,
                    external_version=locked.external_version,
                    kind=kind,
                    format=locked.format or None,
                )
                found.setdefault(entry.resolved_identity, entry)
                continue

            tree = self._tree(spec)
            if tree is None:
                continue
            for ref in tree.dependencies:
                if ref.has_dependencies:
                    continue
                member = ResolvedEntry.from_ref(ref, kind)
                found.setdefault(member.resolved_identity, member)

        return [found[identity] for identity in sorted(found)]

    def missing_trees(self, lockfile: Lockfile) -> List[Tuple[str, str]]:
        """(spec, checksum) of locked aggregates with no usable local dependency tree."""
        return [
            (spec, locked.checksum)
            for _section, spec, locked in lockfile.entries()
            if locked.is_aggregate and self._tree(spec) is None
        ]

    def _tree(self, spec: str):
        return self.tree_cache.get(spec) if self.tree_cache is not None else None

    def verify_tree(self, spec: str, checksum: str) -> VerifyResult:
        """An aggregate whose members cannot be listed counts as missing."""
        path = self.tree_cache.path.name if self.tree_cache is not None else ""
        logger.warning(f"No local dependency tree for {spec}; run 'bdp pull' to audit its members")
        self.store.record_event(audit_db.MISSING, cache_path=path, spec=spec, expected=checksum,
                                reason="dependency tree not cached")
        return VerifyResult(spec=spec, path=path, status=VerifyStatus.MISSING, expected=checksum)

    def verify_entry(self, entry: ResolvedEntry) -> VerifyResult:
        rel = self.store.relative_path(entry)
        identity = entry.resolved_identity
        path = self.store.file_path(entry)

        if not path.is_file():
            self.store.record_event(audit_db.MISSING, cache_path=rel, spec=identity,
                                    expected=entry.checksum)
            return VerifyResult(spec=identity, path=rel, status=VerifyStatus.MISSING,
                                expected=entry.checksum)

        actual = compute_file_checksum(path, self.chunk_size)
        if actual != entry.checksum:
            logger.warning(f"{rel} is corrupted: expected {entry.checksum}, got {actual}")
            self.store.record_event(audit_db.CORRUPTED, cache_path=rel, spec=identity,
                                    expected=entry.checksum, actual=actual)
            return VerifyResult(spec=identity, path=rel, status=VerifyStatus.CORRUPTED,
                                expected=entry.checksum, actual=actual)

        self.store.mark_verified(identity)
        self.store.record_event(audit_db.VERIFY, cache_path=rel, spec=identity, checksum=actual)
        return VerifyResult(spec=identity, path=rel, status=VerifyStatus.VERIFIED,
                            expected=entry.checksum, actual=actual)

    def verify(self, lockfile: Lockfile, on_result=None) -> AuditSummary:
        """
        Check every target; ``on_result(done, result)`` is called per file.

        A locked aggregate with no local dependency tree is reported as
        missing, since its members cannot be listed.
        """
        summary = AuditSummary()
        checks = [(self.verify_tree, item) for item in self.missing_trees(lockfile)]
        checks.extend((self.verify_entry, (entry,)) for entry in self.targets(lockfile))
        for done, (check, args) in enumerate(checks, start=1):
            result = check(*args)
            summary.add(result)
            if on_result is not None:
                on_result(done, result)

        logger.info(
            f"Verified {summary.total} files: {summary.verified} ok, "
            f"{summary.corrupted} corrupted, {summary.missing} missing"
        )
        return summary

    def repair(self, lockfile: Lockfile, summary: AuditSummary,
               orchestrator) -> Optional[OperationSummary]:
        """
        Re-download the corrupted and missing files of a finished audit.

        Missing dependency trees are not repaired here; they come back with
        the next resolution.
        """
        broken = {r.spec for r in summary.problems}
        if not broken:
            return None
        entries = [e for e in self.targets(lockfile) if e.resolved_identity in broken]
        if not entries:
            return None
        logger.info(f"Repairing {len(entries)} files")
        return orchestrator.run(entries, force=True)
