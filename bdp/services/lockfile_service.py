"""
Lockfile service for bdp.

LockfileManager turns a resolution into the two project artifacts:

- bdl.lock: compact, committed, one entry per direct manifest spec
- .bdp/resolved-dependencies.json: local tree cache holding the flattened
  member list and tree checksum of every aggregate

Writes are atomic. When the pinned entries are unchanged, the previous
``generated`` timestamp is kept and the file is left untouched, so
re-resolving the same manifest against the same registry state
reproduces the lockfile byte for byte.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..checksum import tree_checksum
from ..domain.entry import DependencyRef, ResolvedEntry
from ..domain.spec import parse_spec
from ..errors import LockfileError, ParseError
from ..infra.file_store import FileStore
from ..lockfile import Lockfile, LockfileEntry, read_lockfile, write_lockfile

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


# =============================================================================
# DEPENDENCY TREE CACHE
# =============================================================================

@dataclass
class CachedTree:
    """
    Flattened members of one aggregate, as stored locally.

    ``children`` is only set for aggregates that contain other aggregates:
    it holds the direct member rows, nested aggregate rows included.
    """
    spec: str
    checksum: str           # the aggregate's own checksum when cached
    tree_checksum: str
    resolved_at: str
    dependencies: List[DependencyRef] = field(default_factory=list)
    children: Optional[List[DependencyRef]] = None

    @property
    def total_count(self) -> int:
        return len(self.dependencies)

    @property
    def total_size(self) -> int:
        return sum(d.size for d in self.dependencies)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'checksum': self.checksum,
            'resolved_at': self.resolved_at,
            'tree_checksum': self.tree_checksum,
            'total_count': self.total_count,
            'total_size': self.total_size,
            'dependencies': [d.to_dict() for d in self.dependencies],
        }
        if self.children is not None:
            result['children'] = [c.to_dict() for c in self.children]
        return result

    @classmethod
    def from_dict(cls, spec: str, data: Dict[str, Any]) -> 'CachedTree':
        children = data.get('children')
        return cls(
            spec=spec,
            checksum=str(data['checksum']),
            tree_checksum=str(data['tree_checksum']),
            resolved_at=str(data.get('resolved_at') or ''),
            dependencies=[DependencyRef.from_dict(d) for d in data.get('dependencies', [])],
            children=[DependencyRef.from_dict(c) for c in children] if children is not None else None,
        )


class TreeCache:
    """
    Local dependency-tree cache keyed by aggregate spec string.

    A cached tree is reused only when the aggregate's checksum from a fresh
    resolve call matches the one it was cached under, the registry's tree
    checksum (when reported) matches, and the stored member list still
    hashes to the stored tree checksum.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        # Compact JSON: aggregates can hold hundreds of thousands of rows
        self.store = FileStore(self.path, indent=None)

    def get(self, spec: str) -> Optional[CachedTree]:
        data = self.store.get(spec)
        if not data:
            return None
        try:
            return CachedTree.from_dict(spec, data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed tree cache entry for {spec}: {e}")
            return None

    def lookup(self, entry: ResolvedEntry) -> Optional[List[DependencyRef]]:
        """
        Return the member rows to expand for ``entry`` if the cache is valid.

        That is the flattened leaf list, or the direct rows when the
        aggregate contains nested aggregates; those are expanded again from
        their own cached trees.
        """
        key = str(entry.spec)
        cached = self.get(key)
        if cached is None:
            return None
        if cached.checksum != entry.checksum:
            logger.debug(f"Tree cache miss for {key}: aggregate checksum changed")
            return None
        if entry.reported_tree_checksum and entry.reported_tree_checksum != cached.tree_checksum:
            logger.debug(f"Tree cache miss for {key}: registry tree checksum changed")
            return None
        members = sorted(cached.dependencies, key=lambda d: d.sort_key)
        if tree_checksum(d.checksum for d in members) != cached.tree_checksum:
            logger.warning(f"Tree cache for {key} does not match its own tree checksum; refetching")
            return None
        logger.debug(f"Tree cache hit for {key} ({cached.total_count} members)")
        if cached.children is not None:
            return list(cached.children)
        return members

    def all(self) -> Dict[str, CachedTree]:
        result = {}
        for spec in self.store.keys():
            tree = self.get(spec)
            if tree is not None:
                result[spec] = tree
        return result

    def replace_all(self, trees: Iterable[CachedTree]) -> None:
        self.store.write({t.spec: t.to_dict() for t in trees})


# =============================================================================
# INCREMENTAL DIFF
# =============================================================================

def _member_key(ref: DependencyRef) -> Tuple[str, str, str]:
    try:
        spec = parse_spec(ref.source)
    except ParseError:
        return (ref.source, '', '')
    return (spec.organization, spec.name, spec.format or '')


@dataclass
class TreeDiff:
    """Members added, removed and updated between two versions of an aggregate."""
    spec: str
    previous_spec: Optional[str] = None
    added: List[DependencyRef] = field(default_factory=list)
    removed: List[DependencyRef] = field(default_factory=list)
    updated: List[Tuple[DependencyRef, DependencyRef]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'type': 'tree_diff',
            'spec': self.spec,
            'added': len(self.added),
            'removed': len(self.removed),
            'updated': len(self.updated),
        }
        if self.previous_spec:
            result['previous'] = self.previous_spec
        return result


def diff_trees(spec: str, old: List[DependencyRef], new: List[DependencyRef],
               previous_spec: Optional[str] = None) -> TreeDiff:
    """
    Compare two member lists keyed by (organization, name, format),
    ignoring version: a member at a new version or checksum is "updated".
    """
    old_by_key = {_member_key(r): r for r in old}
    new_by_key = {_member_key(r): r for r in new}

    diff = TreeDiff(spec=spec, previous_spec=previous_spec)
    for key in sorted(new_by_key):
        ref = new_by_key[key]
        before = old_by_key.get(key)
        if before is None:
            diff.added.append(ref)
        elif before.source != ref.source or before.checksum != ref.checksum:
            diff.updated.append((before, ref))
    for key in sorted(old_by_key):
        if key not in new_by_key:
            diff.removed.append(old_by_key[key])
    return diff


# =============================================================================
# LOCKFILE MANAGER
# =============================================================================

@dataclass
class LockfileUpdate:
    """What a write changed."""
    lockfile: Lockfile
    written: bool
    diffs: List[TreeDiff] = field(default_factory=list)
    trees_cached: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'lockfile',
            'entries': len(self.lockfile),
            'written': self.written,
            'trees_cached': self.trees_cached,
            'changed_trees': [d.spec for d in self.diffs if d.changed],
        }


class LockfileManager:
    """
    Writes bdl.lock and the dependency-tree cache from a Resolution.

    Example:
        manager = LockfileManager(Path("bdl.lock"), TreeCache(Path(".bdp/resolved-dependencies.json")))
        update = manager.write(resolution)
    """

    def __init__(self, lockfile_path: Path, tree_cache: TreeCache,
                 clock: Callable[[], datetime] = _utc_now):
        self.lockfile_path = Path(lockfile_path)
        self.tree_cache = tree_cache
        self.clock = clock

    def read_previous(self) -> Optional[Lockfile]:
        try:
            return read_lockfile(self.lockfile_path)
        except LockfileError as e:
            logger.warning(f"Replacing unreadable lockfile: {e}")
            return None

    def build(self, resolution, generated: Optional[str] = None) -> Lockfile:
        """Build the in-memory lockfile for a resolution's direct entries."""
        lockfile = Lockfile(generated=generated or format_timestamp(self.clock()))
        for section, spec, entry in resolution.direct_entries():
            tree = resolution.trees.get(str(entry.spec)) if entry.has_dependencies else None
            lockfile.section(section)[spec] = LockfileEntry(
                resolved=entry.resolved_identity,
                checksum=entry.checksum,
                size=entry.size_bytes,
                format=entry.file_format,
                external_version=entry.external_version,
                dependency_count=entry.dependency_count if entry.has_dependencies else None,
                dependencies_resolved=(tree is not None) if entry.has_dependencies else None,
            )
        return lockfile

    def write(self, resolution) -> LockfileUpdate:
        """
        Write the lockfile and tree cache for ``resolution``.

        The lockfile is rewritten only when its entries change.
        """
        previous = self.read_previous()
        lockfile = self.build(resolution)

        written = True
        if lockfile.same_entries(previous):
            lockfile.generated = previous.generated
            written = False
            logger.debug(f"{self.lockfile_path} is up to date")
        else:
            write_lockfile(lockfile, self.lockfile_path)
            logger.info(f"Wrote {self.lockfile_path} ({len(lockfile)} entries)")

        diffs, cached = self._write_tree_cache(resolution)
        return LockfileUpdate(lockfile=lockfile, written=written, diffs=diffs, trees_cached=cached)

    def _write_tree_cache(self, resolution) -> Tuple[List[TreeDiff], int]:
        old_trees = self.tree_cache.all()
        now = format_timestamp(self.clock())

        new_trees: List[CachedTree] = []
        diffs: List[TreeDiff] = []
        dirty = set(old_trees) != set(resolution.trees)

        for key in sorted(resolution.trees):
            tree = resolution.trees[key]
            previous = old_trees.get(key)
            if previous is not None and previous.checksum == tree.entry.checksum \
                    and previous.tree_checksum == tree.tree_checksum \
                    and previous.children == tree.children:
                new_trees.append(previous)
                continue

            dirty = True
            if previous is None:
                previous = _find_replaced(old_trees, key)
            if previous is not None:
                diff = diff_trees(key, previous.dependencies, tree.members, previous_spec=previous.spec)
                if diff.changed:
                    logger.info(
                        f"{key}: {len(diff.added)} added, {len(diff.removed)} removed, "
                        f"{len(diff.updated)} updated since {previous.spec}"
                    )
                diffs.append(diff)

            new_trees.append(CachedTree(
                spec=key,
                checksum=tree.entry.checksum,
                tree_checksum=tree.tree_checksum,
                resolved_at=now,
                dependencies=list(tree.members),
                children=list(tree.children) if tree.children is not None else None,
            ))

        if dirty:
            self.tree_cache.replace_all(new_trees)
        return diffs, len(new_trees)


def _find_replaced(old_trees: Dict[str, CachedTree], key: str) -> Optional[CachedTree]:
    """Find a cached tree for the same aggregate at another version."""
    try:
        spec = parse_spec(key)
    except ParseError:
        return None
    for old_key in sorted(old_trees):
        try:
            old = parse_spec(old_key)
        except ParseError:
            continue
        if (old.organization, old.name, old.format) == (spec.organization, spec.name, spec.format):
            return old_trees[old_key]
    return None
