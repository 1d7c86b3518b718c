"""
Resolver service for bdp.

DependencyResolver turns manifest specs into a deduplicated dependency
graph:

1. resolve each direct spec with one registry lookup
2. expand aggregates depth-first, paging through their dependency lists
   (or reusing the local tree cache when the aggregate is unchanged)
3. fail on cycles (explicit recursion stack) and on one dataset being
   requested at several versions
4. compute each aggregate's tree checksum and compare it with the
   registry's own value

Resolution is sequential and not resumable; an interrupted run is simply
started again.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from ..checksum import tree_checksum
from ..domain.entry import DependencyRef, ResolvedEntry, SOURCE, TOOL
from ..domain.graph import DependencyGraph
from ..domain.spec import SourceSpec, parse_spec
from ..errors import CycleError, RegistryError, RegistryErrorKind

logger = logging.getLogger(__name__)

SECTION_KINDS = {"sources": SOURCE, "tools": TOOL}


@dataclass
class AggregateTree:
    """
    Flattened members of one aggregate with their tree checksum.

    ``children`` keeps the direct member rows when some of them are nested
    aggregates, so a cached tree can be expanded again level by level.
    """
    entry: ResolvedEntry
    members: List[DependencyRef]
    tree_checksum: str
    from_cache: bool = False
    children: Optional[List[DependencyRef]] = None

    @property
    def total_size(self) -> int:
        return sum(m.size for m in self.members)

    def to_dict(self) -> Dict[str, object]:
        return {
            'type': 'aggregate',
            'spec': str(self.entry.spec),
            'members': len(self.members),
            'total_size': self.total_size,
            'tree_checksum': self.tree_checksum,
            'cached': self.from_cache,
        }


@dataclass
class Resolution:
    """Everything one resolution run produced."""
    graph: DependencyGraph
    directs: List[Tuple[str, str, int]] = field(default_factory=list)  # (section, spec, node)
    trees: Dict[str, AggregateTree] = field(default_factory=dict)
    pages_fetched: int = 0
    tree_cache_hits: int = 0

    def direct_entries(self) -> Iterator[Tuple[str, str, ResolvedEntry]]:
        for section, spec, index in self.directs:
            yield section, spec, self.graph.node(index).entry

    def files(self) -> List[ResolvedEntry]:
        """Every non-aggregate entry in the graph, sorted by identity."""
        leaves = [n.entry for n in self.graph if not n.entry.has_dependencies]
        return sorted(leaves, key=lambda e: e.resolved_identity)

    def to_dict(self) -> Dict[str, object]:
        return {
            'type': 'resolution',
            'direct': len(self.directs),
            'nodes': len(self.graph),
            'files': len(self.files()),
            'aggregates': len(self.trees),
            'pages_fetched': self.pages_fetched,
            'tree_cache_hits': self.tree_cache_hits,
        }


class DependencyResolver:
    """
    Resolve manifest specs against the registry.

    Example:
        resolver = DependencyResolver(RegistryClient(url), tree_cache=TreeCache(path))
        resolution = resolver.resolve(manifest.source_specs(), manifest.tool_specs())
    """

    def __init__(self, registry, tree_cache=None, page_size: Optional[int] = None):
        self.registry = registry
        self.tree_cache = tree_cache
        self.page_size = page_size

    def resolve(self, sources: Sequence[SourceSpec],
                tools: Sequence[SourceSpec] = ()) -> Resolution:
        """
        Build the dependency graph for the given direct specs.

        Raises:
            RegistryError: lookup failures, or a tree checksum disagreement
            CycleError: if the registry reports a dependency cycle
            ConflictError: if a dataset is requested at several versions
        """
        resolution = Resolution(graph=DependencyGraph())

        for section, specs in (("sources", sources), ("tools", tools)):
            kind = SECTION_KINDS[section]
            for spec in specs:
                entry = self.registry.resolve(spec, kind)
                index = self._add(resolution.graph, entry, direct=True)
                resolution.directs.append((section, str(spec), index))
                if entry.has_dependencies and str(entry.spec) not in resolution.trees:
                    self._expand(resolution, index)

        resolution.graph.check_conflicts()
        resolution.directs.sort(key=lambda d: (d[0], d[1]))

        logger.info(
            f"Resolved {len(resolution.directs)} direct entries into {len(resolution.graph)} nodes "
            f"({len(resolution.trees)} aggregates, {resolution.tree_cache_hits} from tree cache)"
        )
        return resolution

    # -- Graph building ---------------------------------------------------

    def _add(self, graph: DependencyGraph, entry: ResolvedEntry, direct: bool = False) -> int:
        existing = graph.get(entry.resolved_identity)
        if existing is not None and existing.entry.checksum != entry.checksum:
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT,
                f"Registry reported two checksums for {entry.resolved_identity}: "
                f"{existing.entry.checksum} and {entry.checksum}",
                entry.resolved_identity,
            )
        if existing is not None and entry.has_dependencies and not existing.entry.has_dependencies:
            # A lookup refines a bare dependency row
            graph.replace_entry(existing.index, entry)
        index, _created = graph.add_node(entry, direct=direct)
        return index

    def _members(self, resolution: Resolution, entry: ResolvedEntry) -> Tuple[List[DependencyRef], bool]:
        """Member rows of an aggregate, from the tree cache or the registry."""
        if self.tree_cache is not None:
            cached = self.tree_cache.lookup(entry)
            if cached is not None:
                resolution.tree_cache_hits += 1
                return cached, True
        return self._fetch_all(resolution, entry), False

    def _fetch_all(self, resolution: Resolution, entry: ResolvedEntry) -> List[DependencyRef]:
        items: List[DependencyRef] = []
        page = 1
        while True:
            batch, total_pages = self.registry.fetch_dependencies(entry, page, self.page_size)
            resolution.pages_fetched += 1
            items.extend(batch)
            logger.debug(f"{entry.spec}: dependency page {page}/{total_pages} ({len(batch)} rows)")
            if page >= total_pages or not batch:
                break
            page += 1

        if entry.dependency_count and len(items) != entry.dependency_count:
            logger.warning(
                f"{entry.spec}: registry announced {entry.dependency_count} dependencies "
                f"but listed {len(items)}"
            )
        return items

    def _expand(self, resolution: Resolution, root: int) -> None:
        """
        Depth-first expansion below one aggregate.

        Uses an explicit stack of (node, remaining member rows) frames; the
        identities of the frames currently on the stack form the recursion
        path, and meeting one of them again is a cycle.
        """
        graph = resolution.graph
        root_entry = graph.node(root).entry
        members, from_cache = self._members(resolution, root_entry)

        stack: List[Tuple[int, Iterator[DependencyRef], bool, List[DependencyRef]]] = [
            (root, iter(members), from_cache, members)
        ]
        path: List[str] = [root_entry.resolved_identity]
        on_stack: Set[str] = {root_entry.resolved_identity, str(root_entry.spec)}

        while stack:
            parent, remaining, parent_cached, rows = stack[-1]
            ref = next(remaining, None)

            if ref is None:
                stack.pop()
                finished = graph.node(parent).entry
                path.pop()
                on_stack.discard(finished.resolved_identity)
                on_stack.discard(str(finished.spec))
                self._finish_aggregate(resolution, parent, parent_cached, rows)
                continue

            kind = graph.node(parent).entry.kind
            spec = parse_spec(ref.source)
            identity = str(spec)
            if identity in on_stack:
                raise CycleError(_cycle(path, identity))

            if not ref.has_dependencies:
                child = self._add(graph, ResolvedEntry.from_ref(ref, kind))
                graph.add_edge(parent, child)
                continue

            # Nested aggregate: dedup before any registry call
            existing = graph.get(identity)
            if existing is not None and existing.entry.has_dependencies \
                    and str(existing.entry.spec) in resolution.trees:
                graph.add_edge(parent, existing.index)
                continue

            child_entry = self.registry.resolve(spec, kind)
            if child_entry.resolved_identity in on_stack:
                raise CycleError(_cycle(path, child_entry.resolved_identity))
            child = self._add(graph, child_entry)
            graph.add_edge(parent, child)
            if not child_entry.has_dependencies:
                continue

            child_members, child_cached = self._members(resolution, child_entry)
            stack.append((child, iter(child_members), child_cached, child_members))
            path.append(child_entry.resolved_identity)
            on_stack.update({child_entry.resolved_identity, identity})

    def _finish_aggregate(self, resolution: Resolution, index: int, from_cache: bool,
                          rows: List[DependencyRef]) -> None:
        graph = resolution.graph
        entry = graph.node(index).entry
        leaves = graph.leaves_under(index)
        checksum = tree_checksum(leaf.checksum for leaf in leaves)

        if entry.reported_tree_checksum and entry.reported_tree_checksum != checksum:
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT,
                f"Tree checksum mismatch for {entry.spec}: registry reports "
                f"{entry.reported_tree_checksum}, dependency list hashes to {checksum}",
                str(entry.spec),
            )

        nested = any(r.has_dependencies for r in rows)
        graph.replace_entry(index, replace(entry, tree_checksum=checksum))
        resolution.trees[str(entry.spec)] = AggregateTree(
            entry=graph.node(index).entry,
            members=[leaf.to_ref() for leaf in leaves],
            tree_checksum=checksum,
            from_cache=from_cache,
            children=sorted(rows, key=lambda r: r.sort_key) if nested else None,
        )
        logger.debug(f"{entry.spec}: {len(leaves)} members, tree checksum {checksum}")


def _cycle(path: List[str], identity: str) -> List[str]:
    """The part of the recursion path that loops back to ``identity``."""
    start = path.index(identity) if identity in path else 0
    return path[start:] + [identity]
