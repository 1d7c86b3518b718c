"""
Resolution results for bdp.

ResolvedEntry is what the registry says about one SourceSpec: its
checksum, size and whether it is an aggregate. DependencyRef is the
compact row the registry returns when paging through an aggregate's
dependency list; it is also what the local dependency-tree cache stores.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..checksum import normalize_checksum
from .spec import SourceSpec, parse_spec

SOURCE = "source"
TOOL = "tool"

DEFAULT_FORMAT = "bin"


@dataclass(frozen=True)
class DependencyRef:
    """One member of an aggregate's dependency list."""
    source: str
    checksum: str
    size: int
    has_dependencies: bool = False
    dependency_count: int = 0

    @property
    def sort_key(self) -> str:
        return self.source

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DependencyRef':
        return cls(
            source=str(data['source']),
            checksum=normalize_checksum(str(data['checksum'])),
            size=int(data.get('size', 0)),
            has_dependencies=bool(data.get('has_dependencies', False)),
            dependency_count=int(data.get('dependency_count') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'source': self.source,
            'checksum': self.checksum,
            'size': self.size,
        }
        # Leaves stay three keys wide; the tree cache can hold 10^5+ rows
        if self.has_dependencies:
            result['has_dependencies'] = True
            result['dependency_count'] = self.dependency_count
        return result


@dataclass(frozen=True)
class ResolvedEntry:
    """
    A SourceSpec resolved against the registry.

    ``tree_checksum`` is filled in by the resolver for aggregates;
    ``reported_tree_checksum`` is what the registry claimed, when it said.
    """
    spec: SourceSpec
    resolved_identity: str
    checksum: str
    size_bytes: int
    external_version: str = ""
    has_dependencies: bool = False
    dependency_count: int = 0
    kind: str = SOURCE
    format: Optional[str] = None
    download_url: Optional[str] = None
    tree_checksum: Optional[str] = None
    reported_tree_checksum: Optional[str] = None

    @property
    def identity(self) -> str:
        return self.resolved_identity

    @property
    def is_aggregate(self) -> bool:
        return self.has_dependencies

    @property
    def file_format(self) -> str:
        """Format used for the cached file name."""
        return self.spec.format or self.format or DEFAULT_FORMAT

    @classmethod
    def from_registry(cls, spec: SourceSpec, data: Dict[str, Any], kind: str = SOURCE) -> 'ResolvedEntry':
        """
        Build from a registry metadata payload.

        Expected keys: checksum, size_bytes (or size), external_version,
        has_dependencies, dependency_count. Optional: resolved, format,
        download_url, tree_checksum.
        """
        size = data.get('size_bytes', data.get('size', 0))
        tree = data.get('tree_checksum')
        return cls(
            spec=spec,
            resolved_identity=str(data.get('resolved') or spec.identity),
            checksum=normalize_checksum(str(data['checksum'])),
            size_bytes=int(size or 0),
            external_version=str(data.get('external_version') or ""),
            has_dependencies=bool(data.get('has_dependencies', False)),
            dependency_count=int(data.get('dependency_count') or 0),
            kind=kind,
            format=data.get('format'),
            download_url=data.get('download_url'),
            reported_tree_checksum=normalize_checksum(tree) if tree else None,
        )

    @classmethod
    def from_ref(cls, ref: DependencyRef, kind: str = SOURCE) -> 'ResolvedEntry':
        """Build a leaf entry from a dependency row, without a registry lookup."""
        spec = parse_spec(ref.source)
        return cls(
            spec=spec,
            resolved_identity=spec.identity,
            checksum=ref.checksum,
            size_bytes=ref.size,
            has_dependencies=ref.has_dependencies,
            dependency_count=ref.dependency_count,
            kind=kind,
        )

    def to_ref(self) -> DependencyRef:
        return DependencyRef(
            source=self.resolved_identity,
            checksum=self.checksum,
            size=self.size_bytes,
            has_dependencies=self.has_dependencies,
            dependency_count=self.dependency_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'spec': str(self.spec),
            'resolved': self.resolved_identity,
            'kind': self.kind,
            'checksum': self.checksum,
            'size': self.size_bytes,
            'external_version': self.external_version,
            'has_dependencies': self.has_dependencies,
        }
        if self.has_dependencies:
            result['dependency_count'] = self.dependency_count
        if self.tree_checksum:
            result['tree_checksum'] = self.tree_checksum
        return result
