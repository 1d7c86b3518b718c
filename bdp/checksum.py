"""
Checksum computation and verification.

All checksums exchanged with the registry and written to the lockfile use
the ``sha256-{hex}`` form; bare hex digests are accepted on input and
normalized.
"""

import hashlib
from pathlib import Path
from typing import Iterable, Union

from .errors import ChecksumMismatchError

PREFIX = "sha256-"
CHUNK_SIZE = 1024 * 1024


def format_checksum(hex_digest: str) -> str:
    """Return ``sha256-{hex}`` for a bare hex digest."""
    return f"{PREFIX}{hex_digest.lower()}"


def normalize_checksum(value: str) -> str:
    """
    Normalize a checksum to ``sha256-{hex}``.

    Accepts ``sha256-abc...``, ``sha256:abc...`` and bare hex.
    """
    value = value.strip()
    lowered = value.lower()
    if lowered.startswith(PREFIX):
        return format_checksum(value[len(PREFIX):])
    if lowered.startswith("sha256:"):
        return format_checksum(value[len("sha256:"):])
    return format_checksum(value)


def compute_checksum(data: bytes) -> str:
    """Compute the checksum of a byte string."""
    return format_checksum(hashlib.sha256(data).hexdigest())


def compute_file_checksum(path: Union[str, Path], chunk_size: int = CHUNK_SIZE) -> str:
    """Compute the checksum of a file, streaming it in chunks."""
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return format_checksum(hasher.hexdigest())


def verify_file_checksum(path: Union[str, Path], expected: str) -> None:
    """Raise ChecksumMismatchError unless the file hashes to ``expected``."""
    actual = compute_file_checksum(path)
    if actual != normalize_checksum(expected):
        raise ChecksumMismatchError(str(path), normalize_checksum(expected), actual)


def tree_checksum(member_checksums: Iterable[str]) -> str:
    """
    Hash an ordered list of member checksums.

    Callers must pass the checksums in resolved-identity order; see
    ``DependencyRef.sort_key``. The normalized checksums are concatenated
    without separators and hashed.
    """
    hasher = hashlib.sha256()
    for checksum in member_checksums:
        hasher.update(normalize_checksum(checksum).encode('ascii'))
    return format_checksum(hasher.hexdigest())
