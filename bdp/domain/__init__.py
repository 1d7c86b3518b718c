"""
Domain layer for bdp.

Contains pure domain objects with no I/O or side effects:
- SourceSpec: Parsed ``organization:name[-format]@version``
- ResolvedEntry / DependencyRef: What the registry says about a spec
- DependencyGraph: Deduplicated, arena-backed graph of one resolution
- Operation results: Download, cleanup and verification summaries

These objects are immutable where possible and provide
serialization methods for JSONL output.
"""

from .spec import SourceSpec, parse_spec, is_valid_spec
from .entry import ResolvedEntry, DependencyRef, SOURCE, TOOL
from .graph import DependencyGraph, DependencyNode, MANIFEST_PARENT
from .records import CacheEntry, FileLock, AuditEvent
from .operation import (
    OperationStatus,
    OperationDetail,
    OperationSummary,
    DownloadResult,
    VerifyStatus,
    VerifyResult,
    AuditSummary,
)

__all__ = [
    'SourceSpec',
    'parse_spec',
    'is_valid_spec',
    'ResolvedEntry',
    'DependencyRef',
    'SOURCE',
    'TOOL',
    'DependencyGraph',
    'DependencyNode',
    'MANIFEST_PARENT',
    'CacheEntry',
    'FileLock',
    'AuditEvent',
    'OperationStatus',
    'OperationDetail',
    'OperationSummary',
    'DownloadResult',
    'VerifyStatus',
    'VerifyResult',
    'AuditSummary',
]
