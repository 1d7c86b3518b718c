"""
Error taxonomy for bdp.

Every error subclasses CommandError so the CLI layer can map it to an
exit code without knowing the details:

- Structural errors (ParseError, ConflictError, CycleError) abort a
  resolution before any download starts.
- Per-file errors (ChecksumMismatchError, LockTimeoutError,
  PartialDownloadError) are isolated by the download orchestrator and
  collected into its report.
- RegistryError carries a kind; network and rate-limit failures are
  retryable, the rest are fatal.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .exit_codes import (
    CommandError,
    DATA_ERROR,
    GENERAL_ERROR,
    INTEGRITY_ERROR,
    MANIFEST_EDIT_REQUIRED,
    REGISTRY_ERROR,
    TRANSIENT_FAILURE,
)


class ParseError(CommandError):
    """Raised when a source specification cannot be parsed."""
    def __init__(self, message: str, text: str = "", offending: str = ""):
        super().__init__(message, DATA_ERROR)
        self.text = text
        self.offending = offending


class ManifestError(CommandError):
    """Raised when bdp.yml is missing or malformed."""
    def __init__(self, message: str):
        super().__init__(message, DATA_ERROR)


class LockfileError(CommandError):
    """Raised when bdl.lock is missing or malformed."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, DATA_ERROR)
        self.path = path


class CacheError(CommandError):
    """Raised when cache bookkeeping fails."""
    def __init__(self, message: str):
        super().__init__(message, GENERAL_ERROR)


class RegistryErrorKind(Enum):
    """Why a registry call failed."""
    NOT_FOUND = "not_found"
    VERSION_MISMATCH = "version_mismatch"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    INCONSISTENT = "inconsistent"


class RegistryError(CommandError):
    """
    Raised when the registry cannot satisfy a request.

    NETWORK and RATE_LIMITED are transient and retried with backoff;
    NOT_FOUND, VERSION_MISMATCH and INCONSISTENT are fatal.
    """
    def __init__(
        self,
        kind: RegistryErrorKind,
        message: str,
        spec: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        exit_code = TRANSIENT_FAILURE if kind in (
            RegistryErrorKind.NETWORK, RegistryErrorKind.RATE_LIMITED
        ) else REGISTRY_ERROR
        super().__init__(message, exit_code)
        self.kind = kind
        self.spec = spec
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in (RegistryErrorKind.NETWORK, RegistryErrorKind.RATE_LIMITED)

    def to_dict(self) -> Dict[str, object]:
        return {"kind": self.kind.value, "spec": self.spec}


@dataclass
class VersionConflict:
    """One (organization, name) pair requested at more than one version."""
    organization: str
    name: str
    # version -> identities of the parents that asked for it
    requests: Dict[str, List[str]] = field(default_factory=dict)

    def describe(self) -> str:
        parts = []
        for version in sorted(self.requests):
            parents = ", ".join(sorted(self.requests[version]))
            parts.append(f"{version} (requested by {parents})")
        return f"{self.organization}:{self.name} at " + "; ".join(parts)

    def to_dict(self) -> Dict[str, object]:
        return {
            'organization': self.organization,
            'name': self.name,
            'versions': {v: sorted(p) for v, p in sorted(self.requests.items())},
        }


class ConflictError(CommandError):
    """
    Raised when the dependency graph asks for several versions of the
    same dataset. Never resolved automatically.
    """
    def __init__(self, conflicts: List[VersionConflict]):
        lines = [c.describe() for c in conflicts]
        message = "Version conflict, edit the manifest to pick one version:\n  " + "\n  ".join(lines)
        super().__init__(message, MANIFEST_EDIT_REQUIRED)
        self.conflicts = conflicts

    def to_dict(self) -> Dict[str, object]:
        return {"conflicts": [c.to_dict() for c in self.conflicts]}


class CycleError(CommandError):
    """Raised when the registry returns a dependency cycle."""
    def __init__(self, cycle: List[str]):
        message = (
            "Dependency cycle reported by the registry: " + " -> ".join(cycle)
            + ". This is a registry defect, please report it."
        )
        super().__init__(message, MANIFEST_EDIT_REQUIRED)
        self.cycle = cycle

    def to_dict(self) -> Dict[str, object]:
        return {"cycle": list(self.cycle)}


class ChecksumMismatchError(CommandError):
    """Raised when downloaded or cached bytes do not hash to the expected value."""
    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected}, got {actual}",
            TRANSIENT_FAILURE,
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class LockTimeoutError(CommandError):
    """Raised when a lease lock could not be acquired within the retry budget."""
    def __init__(self, resource_path: str, holder: Optional[str] = None, attempts: int = 0):
        held = f" (held by {holder})" if holder else ""
        super().__init__(
            f"Timed out waiting for lock on {resource_path}{held} after {attempts} attempts",
            TRANSIENT_FAILURE,
        )
        self.resource_path = resource_path
        self.holder = holder
        self.attempts = attempts


class PartialDownloadError(CommandError):
    """
    Raised when a transfer stops early. The .partial file is kept and the
    download resumes from ``offset``.
    """
    def __init__(self, path: str, offset: int, expected_size: int, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Download of {path} stopped at byte {offset} of {expected_size}{detail}",
            TRANSIENT_FAILURE,
        )
        self.path = path
        self.offset = offset
        self.expected_size = expected_size


class IntegrityError(CommandError):
    """Raised by verify when cached files are missing or corrupted."""
    def __init__(self, message: str, counts: Optional[Dict[str, int]] = None):
        super().__init__(message, INTEGRITY_ERROR)
        self.counts = counts or {}

    def to_dict(self) -> Dict[str, object]:
        return dict(self.counts)
