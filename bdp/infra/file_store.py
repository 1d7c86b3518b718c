"""
File store infrastructure for bdp.

Provides JSON file persistence with:
- Atomic writes (write to temp, then rename)
- Sorted keys so identical content produces identical bytes
- Thread-safe operations
- Automatic parent directory creation

Used for the local dependency-tree cache and the per-version meta.json
records in the cache tree; the manifest and lockfile reuse
``atomic_write_text``.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

logger = logging.getLogger(__name__)


def atomic_write_text(path: Union[str, Path], text: str) -> None:
    """
    Replace ``path`` with ``text`` in one rename.

    Readers see either the previous file or the new one, never a
    truncated mix, even if the process dies mid-write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temp file in same directory
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        # Atomic rename
        os.replace(temp_path, path)

    except BaseException:
        # Clean up temp file on error
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def dump_json(data: Any, indent: Optional[int] = 2) -> str:
    """Deterministic JSON text with a trailing newline."""
    return json.dumps(data, indent=indent, sort_keys=True, ensure_ascii=False) + '\n'


class FileStore:
    """
    JSON file persistence with atomic writes.

    Example:
        store = FileStore(Path(".bdp/resolved-dependencies.json"))
        store.write({"uniprot:all-fasta@1.0": {"tree_checksum": "sha256-...", ...}})
        data = store.get("uniprot:all-fasta@1.0")
    """

    def __init__(self, path: Path, indent: Optional[int] = 2):
        """
        Initialize FileStore.

        Args:
            path: Path to JSON file (created on first write)
            indent: JSON indentation (None for compact output)
        """
        self.path = Path(path).expanduser()
        self.indent = indent
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, Any]] = None

    def _write_atomic(self, data: Dict[str, Any]) -> None:
        atomic_write_text(self.path, dump_json(data, self.indent))

    def _load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache

        try:
            if self.path.exists():
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    self._cache = data
                    return self._cache
                logger.warning(f"Ignoring {self.path}: top-level value is not an object")
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Error reading {self.path}: {e}")

        self._cache = {}
        return self._cache

    def read(self) -> Dict[str, Any]:
        """
        Read entire store.

        Returns:
            Dictionary with all stored data (empty if missing or unreadable)
        """
        with self._lock:
            return dict(self._load())

    def write(self, data: Dict[str, Any]) -> None:
        """Write entire store."""
        with self._lock:
            self._write_atomic(data)
            self._cache = dict(data)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def keys(self) -> list:
        return list(self.read().keys())


