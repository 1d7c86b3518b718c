"""
Tracking-database records.

CacheEntry, FileLock and AuditEvent mirror rows of the cache database.
Timestamps are Unix epoch seconds (float); ``to_dict`` renders them as
ISO-8601 UTC for output.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def iso(ts: Optional[float]) -> Optional[str]:
    """Epoch seconds -> ISO-8601 UTC string (None passes through)."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


@dataclass
class CacheEntry:
    """One cached file."""
    spec: str
    kind: str
    organization: str
    name: str
    version: str
    format: str
    checksum: str
    size_bytes: int
    cache_path: str
    cached_at: float
    last_accessed: float
    external_version: str = ""
    last_verified: Optional[float] = None
    access_count: int = 0

    @classmethod
    def from_row(cls, row) -> 'CacheEntry':
        return cls(
            spec=row['spec'],
            kind=row['kind'],
            organization=row['organization'],
            name=row['name'],
            version=row['version'],
            format=row['format'],
            checksum=row['checksum'],
            size_bytes=row['size_bytes'],
            cache_path=row['cache_path'],
            cached_at=row['cached_at'],
            last_accessed=row['last_accessed'],
            external_version=row['external_version'] or "",
            last_verified=row['last_verified'],
            access_count=row['access_count'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'spec': self.spec,
            'kind': self.kind,
            'format': self.format,
            'checksum': self.checksum,
            'size': self.size_bytes,
            'path': self.cache_path,
            'external_version': self.external_version,
            'cached_at': iso(self.cached_at),
            'last_accessed': iso(self.last_accessed),
            'last_verified': iso(self.last_verified),
            'access_count': self.access_count,
        }


@dataclass
class FileLock:
    """A lease on one resource path."""
    resource_path: str
    locked_by: str
    token: str
    locked_at: float
    ttl: float
    operation: str

    @property
    def expires_at(self) -> float:
        return self.locked_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, row) -> 'FileLock':
        return cls(
            resource_path=row['resource_path'],
            locked_by=row['locked_by'],
            token=row['token'],
            locked_at=row['locked_at'],
            ttl=row['ttl'],
            operation=row['operation'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_path': self.resource_path,
            'locked_by': self.locked_by,
            'operation': self.operation,
            'locked_at': iso(self.locked_at),
            'expires_at': iso(self.expires_at),
        }


@dataclass
class AuditEvent:
    """An append-only activity record (download, verify, corruption...)."""
    event_type: str
    timestamp: float
    machine_id: str
    cache_path: Optional[str] = None
    spec: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'AuditEvent':
        return cls(
            id=row['id'],
            event_type=row['event_type'],
            timestamp=row['timestamp'],
            machine_id=row['machine_id'],
            cache_path=row['cache_path'],
            spec=row['spec'],
            details=json.loads(row['details']) if row['details'] else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'event': self.event_type,
            'timestamp': iso(self.timestamp),
            'machine_id': self.machine_id,
        }
        if self.spec:
            result['spec'] = self.spec
        if self.cache_path:
            result['path'] = self.cache_path
        if self.details:
            result['details'] = self.details
        return result
