"""
Lockfile (bdl.lock) model and codec.

The lockfile is generated, committed and deliberately small: one entry per
direct manifest spec, whatever the size of the transitive graph behind it.

    {
      "generated": "2026-01-01T00:00:00Z",
      "lockfileVersion": 1,
      "sources": {
        "uniprot:P01308-fasta@1.0": {
          "checksum": "sha256-...",
          "external_version": "2025_01",
          "format": "fasta",
          "resolved": "uniprot:P01308-fasta@1.0",
          "size": 4096
        }
      },
      "tools": {}
    }

Keys are sorted and the text is written with a single rename, so the
same resolution always produces the same bytes and a crash mid-write
leaves the previous lockfile intact.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from .checksum import normalize_checksum
from .errors import LockfileError
from .infra.file_store import atomic_write_text, dump_json

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "bdl.lock"
LOCKFILE_VERSION = 1

SECTIONS = ("sources", "tools")


@dataclass(frozen=True)
class LockfileEntry:
    """Persisted record for one direct manifest spec."""
    resolved: str
    checksum: str
    size: int
    format: str
    external_version: str = ""
    dependency_count: Optional[int] = None
    dependencies_resolved: Optional[bool] = None

    @property
    def is_aggregate(self) -> bool:
        return self.dependency_count is not None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'resolved': self.resolved,
            'format': self.format,
            'checksum': self.checksum,
            'size': self.size,
            'external_version': self.external_version,
        }
        if self.dependency_count is not None:
            result['dependency_count'] = self.dependency_count
            result['dependencies_resolved'] = bool(self.dependencies_resolved)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LockfileEntry':
        count = data.get('dependency_count')
        return cls(
            resolved=str(data['resolved']),
            checksum=normalize_checksum(str(data['checksum'])),
            size=int(data['size']),
            format=str(data.get('format') or ''),
            external_version=str(data.get('external_version') or ''),
            dependency_count=int(count) if count is not None else None,
            dependencies_resolved=data.get('dependencies_resolved') if count is not None else None,
        )


@dataclass
class Lockfile:
    """In-memory bdl.lock."""
    generated: str
    sources: Dict[str, LockfileEntry] = field(default_factory=dict)
    tools: Dict[str, LockfileEntry] = field(default_factory=dict)
    version: int = LOCKFILE_VERSION

    def section(self, kind: str) -> Dict[str, LockfileEntry]:
        if kind == "sources":
            return self.sources
        if kind == "tools":
            return self.tools
        raise ValueError(f"Unknown lockfile section: {kind}")

    def entries(self) -> Iterator[Tuple[str, str, LockfileEntry]]:
        """Yield (section, spec, entry) in sorted order."""
        for kind in SECTIONS:
            entries = self.section(kind)
            for spec in sorted(entries):
                yield kind, spec, entries[spec]

    def same_entries(self, other: Optional['Lockfile']) -> bool:
        """True when both lockfiles pin exactly the same entries."""
        if other is None:
            return False
        return (
            self.version == other.version
            and self.sources == other.sources
            and self.tools == other.tools
        )

    def __len__(self) -> int:
        return len(self.sources) + len(self.tools)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lockfileVersion': self.version,
            'generated': self.generated,
            'sources': {k: v.to_dict() for k, v in self.sources.items()},
            'tools': {k: v.to_dict() for k, v in self.tools.items()},
        }

    def to_json(self) -> str:
        return dump_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Lockfile':
        if not isinstance(data, dict):
            raise LockfileError("Lockfile must be a JSON object")
        version = data.get('lockfileVersion')
        if version != LOCKFILE_VERSION:
            raise LockfileError(f"Unsupported lockfileVersion: {version!r}")

        sections: Dict[str, Dict[str, LockfileEntry]] = {}
        for kind in SECTIONS:
            raw = data.get(kind) or {}
            if not isinstance(raw, dict):
                raise LockfileError(f"Lockfile '{kind}' must be an object")
            try:
                sections[kind] = {k: LockfileEntry.from_dict(v) for k, v in raw.items()}
            except (KeyError, TypeError, ValueError) as e:
                raise LockfileError(f"Malformed entry in lockfile '{kind}': {e}") from e

        return cls(
            generated=str(data.get('generated') or ''),
            sources=sections['sources'],
            tools=sections['tools'],
            version=version,
        )


def parse_lockfile(text: str, path: Optional[str] = None) -> Lockfile:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise LockfileError(f"Lockfile is not valid JSON: {e}", path) from e
    try:
        return Lockfile.from_dict(data)
    except LockfileError as e:
        e.path = path
        raise


def load_lockfile(path: Union[str, Path] = LOCKFILE_NAME) -> Lockfile:
    """
    Read bdl.lock.

    Raises:
        LockfileError: if the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise LockfileError(f"No lockfile at {path}. Run 'bdp pull' first.", str(path))
    with open(path, 'r', encoding='utf-8') as f:
        return parse_lockfile(f.read(), str(path))


def read_lockfile(path: Union[str, Path] = LOCKFILE_NAME) -> Optional[Lockfile]:
    """Read bdl.lock if present, None otherwise."""
    if not Path(path).exists():
        return None
    return load_lockfile(path)


def write_lockfile(lockfile: Lockfile, path: Union[str, Path] = LOCKFILE_NAME) -> None:
    """Write bdl.lock with a temp file and one rename."""
    atomic_write_text(path, lockfile.to_json())
    logger.debug(f"Wrote {path} ({len(lockfile)} entries)")
