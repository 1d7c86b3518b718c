"""
Database module for bdp.

Provides the SQLite tracking database behind the cache: which files are
cached, who holds which lease lock, and what happened to each file.

Key components:
- connection: Database connection management
- schema: Table definitions and schema versioning
- entries: Cache entry CRUD and storage statistics
- locks: Lease lock rows
- audit: Append-only audit log
"""

from .connection import (
    get_connection,
    get_db_path,
    Database,
    transaction,
)
from .schema import CURRENT_VERSION, ensure_schema

__all__ = [
    'get_connection',
    'get_db_path',
    'Database',
    'transaction',
    'CURRENT_VERSION',
    'ensure_schema',
]
