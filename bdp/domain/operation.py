"""
Operation result domain objects for bdp.

Provides standardized result types for the commands that touch the cache:
downloads, cleanup and verification. Each bulk run collects one
OperationDetail per file into an OperationSummary, which is what the CLI
prints as its final JSONL line.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class OperationStatus(Enum):
    """Status of an individual operation."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEFERRED = "deferred"
    DRY_RUN = "dry_run"


class VerifyStatus(Enum):
    """Outcome of checking one cached file."""
    VERIFIED = "verified"
    CORRUPTED = "corrupted"
    MISSING = "missing"


@dataclass
class OperationDetail:
    """
    Details of a single operation on one cached file.

    Used to track what happened to each file during bulk operations.
    """
    spec: str
    path: str
    status: OperationStatus
    action: str  # e.g., "downloaded", "cached", "removed", "would_remove"
    message: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            'spec': self.spec,
            'path': self.path,
            'status': self.status.value,
            'action': self.action,
        }
        if self.message:
            result['message'] = self.message
        if self.error:
            result['error'] = self.error
        if self.metadata:
            result.update(self.metadata)
        return result


@dataclass
class DownloadResult(OperationDetail):
    """Result of downloading one file."""
    bytes_transferred: int = 0
    resumed_from: int = 0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['bytes'] = self.bytes_transferred
        if self.resumed_from:
            result['resumed_from'] = self.resumed_from
        if self.attempts:
            result['attempts'] = self.attempts
        return result


@dataclass
class VerifyResult:
    """Result of verifying one cached file against its expected checksum."""
    spec: str
    path: str
    status: VerifyStatus
    expected: str
    actual: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'spec': self.spec,
            'path': self.path,
            'status': self.status.value,
            'expected': self.expected,
        }
        if self.actual:
            result['actual'] = self.actual
        return result


@dataclass
class OperationSummary:
    """
    Summary of a bulk operation across many files.

    Collects statistics and details from downloads and cleanups.
    """
    operation: str  # e.g., "download", "clean"
    total: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    bytes: int = 0
    dry_run: bool = False
    details: List[OperationDetail] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True if no failures occurred."""
        return self.failed == 0 and self.deferred == 0

    def add_detail(self, detail: OperationDetail) -> None:
        """Add an operation detail and update counts."""
        self.details.append(detail)
        self.total += 1

        if detail.status == OperationStatus.SUCCESS:
            self.successful += 1
        elif detail.status == OperationStatus.SKIPPED:
            self.skipped += 1
        elif detail.status == OperationStatus.FAILED:
            self.failed += 1
            if detail.error:
                self.errors.append(f"{detail.spec}: {detail.error}")
        elif detail.status == OperationStatus.DEFERRED:
            self.deferred += 1
            if detail.error:
                self.errors.append(f"{detail.spec}: {detail.error}")
        elif detail.status == OperationStatus.DRY_RUN:
            self.successful += 1  # Count dry-run as successful

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'type': 'summary',
            'operation': self.operation,
            'total': self.total,
            'successful': self.successful,
            'skipped': self.skipped,
            'failed': self.failed,
            'deferred': self.deferred,
            'bytes': self.bytes,
            'dry_run': self.dry_run,
            'errors': self.errors,
        }


@dataclass
class AuditSummary:
    """Counts per verification status, plus the per-file results."""
    verified: int = 0
    corrupted: int = 0
    missing: int = 0
    results: List[VerifyResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.verified + self.corrupted + self.missing

    @property
    def success(self) -> bool:
        return self.corrupted == 0 and self.missing == 0

    @property
    def problems(self) -> List[VerifyResult]:
        return [r for r in self.results if r.status != VerifyStatus.VERIFIED]

    def add(self, result: VerifyResult) -> None:
        self.results.append(result)
        if result.status == VerifyStatus.VERIFIED:
            self.verified += 1
        elif result.status == VerifyStatus.CORRUPTED:
            self.corrupted += 1
        else:
            self.missing += 1

    def counts(self) -> Dict[str, int]:
        return {
            'verified': self.verified,
            'corrupted': self.corrupted,
            'missing': self.missing,
        }

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'type': 'summary', 'operation': 'verify', 'total': self.total}
        result.update(self.counts())
        return result
