"""
Arena-style dependency graph.

Nodes live in a flat list and are addressed by integer index; an identity
index maps each resolved identity to its slot, so a node is materialized
exactly once no matter how many parents reference it. Edges are stored as
(parent_index, child_index) pairs rather than object references, which
keeps graphs with hundreds of thousands of members cheap to build and
discard.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..errors import ConflictError, VersionConflict
from .entry import ResolvedEntry

MANIFEST_PARENT = "manifest"


@dataclass
class DependencyNode:
    """A graph vertex: a resolved entry plus the indices of its children."""
    index: int
    entry: ResolvedEntry
    direct: bool = False
    children: List[int] = field(default_factory=list)

    @property
    def identity(self) -> str:
        return self.entry.resolved_identity


class DependencyGraph:
    """
    Deduplicated dependency graph for one resolution run.

    Owned by a single resolver invocation; discarded once the lockfile
    has been written.
    """

    def __init__(self):
        self._nodes: List[DependencyNode] = []
        self._index: Dict[str, int] = {}
        self._edges: List[Tuple[int, int]] = []
        self._edge_set: Set[Tuple[int, int]] = set()
        self._roots: List[int] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, identity: str) -> bool:
        return identity in self._index

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self._nodes)

    def add_node(self, entry: ResolvedEntry, direct: bool = False) -> Tuple[int, bool]:
        """
        Add a node unless its identity is already present.

        Returns:
            (index, created) where created is False for a revisit
        """
        existing = self._index.get(entry.resolved_identity)
        if existing is not None:
            node = self._nodes[existing]
            if direct and not node.direct:
                node.direct = True
                self._roots.append(existing)
            return existing, False

        index = len(self._nodes)
        self._nodes.append(DependencyNode(index=index, entry=entry, direct=direct))
        self._index[entry.resolved_identity] = index
        if direct:
            self._roots.append(index)
        return index, True

    def add_edge(self, parent: int, child: int) -> None:
        pair = (parent, child)
        if pair in self._edge_set:
            return
        self._edge_set.add(pair)
        self._edges.append(pair)
        self._nodes[parent].children.append(child)

    def node(self, index: int) -> DependencyNode:
        return self._nodes[index]

    def get(self, identity: str) -> Optional[DependencyNode]:
        index = self._index.get(identity)
        return self._nodes[index] if index is not None else None

    def replace_entry(self, index: int, entry: ResolvedEntry) -> None:
        """Swap the entry stored at ``index`` (identity must not change)."""
        if entry.resolved_identity != self._nodes[index].identity:
            raise ValueError("replace_entry cannot change a node's identity")
        self._nodes[index].entry = entry

    @property
    def edges(self) -> List[Tuple[int, int]]:
        return list(self._edges)

    @property
    def roots(self) -> List[DependencyNode]:
        return [self._nodes[i] for i in self._roots]

    def descendants(self, index: int) -> List[int]:
        """
        All nodes reachable from ``index`` (excluding itself), in
        resolved-identity order.
        """
        seen: Set[int] = set()
        stack = list(self._nodes[index].children)
        while stack:
            current = stack.pop()
            if current in seen or current == index:
                continue
            seen.add(current)
            stack.extend(self._nodes[current].children)
        return sorted(seen, key=lambda i: self._nodes[i].identity)

    def leaves_under(self, index: int) -> List[ResolvedEntry]:
        """Flattened non-aggregate members below ``index``, sorted by identity."""
        return [
            self._nodes[i].entry for i in self.descendants(index)
            if not self._nodes[i].entry.has_dependencies
        ]

    def find_conflicts(self) -> List[VersionConflict]:
        """
        Group nodes by (organization, name) ignoring version and report
        every group requested at more than one version, with the
        requesting parents of each version.
        """
        parents: Dict[int, List[str]] = defaultdict(list)
        for parent, child in self._edges:
            parents[child].append(self._nodes[parent].identity)

        groups: Dict[Tuple[str, str], Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
        for node in self._nodes:
            spec = node.entry.spec
            requesters = groups[(node.entry.kind,) + spec.package_key][spec.version]
            if node.direct:
                requesters.append(MANIFEST_PARENT)
            requesters.extend(parents.get(node.index, []))

        conflicts = []
        for (_kind, org, name), versions in sorted(groups.items()):
            if len(versions) > 1:
                conflicts.append(VersionConflict(
                    organization=org,
                    name=name,
                    requests={v: sorted(set(p)) for v, p in versions.items()},
                ))
        return conflicts

    def check_conflicts(self) -> None:
        """Raise ConflictError when any dataset appears at several versions."""
        conflicts = self.find_conflicts()
        if conflicts:
            raise ConflictError(conflicts)
