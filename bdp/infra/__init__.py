"""
Infrastructure layer for bdp.

Contains abstractions for external systems:
- RegistryClient: BDP registry API access
- FileStore: JSON file persistence with atomic writes

These provide clean interfaces that can be mocked for testing.
"""

from .registry_client import RegistryClient, DownloadStream, default_retry_policy
from .file_store import FileStore, atomic_write_text

__all__ = [
    'RegistryClient',
    'DownloadStream',
    'default_retry_policy',
    'FileStore',
    'atomic_write_text',
]
