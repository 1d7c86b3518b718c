"""
Service layer for bdp.

Contains the engine that orchestrates domain objects and infrastructure:
- DependencyResolver: Manifest specs to a deduplicated dependency graph
- LockfileManager / TreeCache: bdl.lock and the local dependency-tree cache
- CacheStore: On-disk cache, tracking database and lease locks
- DownloadOrchestrator: Parallel, resumable, verified downloads
- IntegrityAuditor: Re-hash cached files against the lockfile

Services are the primary API for commands to use.
"""

from .resolver_service import DependencyResolver, Resolution, AggregateTree
from .lockfile_service import LockfileManager, LockfileUpdate, TreeCache, TreeDiff, diff_trees
from .cache_service import CacheStore, LockSweeper
from .download_service import DownloadOrchestrator
from .audit_service import IntegrityAuditor

__all__ = [
    'DependencyResolver',
    'Resolution',
    'AggregateTree',
    'LockfileManager',
    'LockfileUpdate',
    'TreeCache',
    'TreeDiff',
    'diff_trees',
    'CacheStore',
    'LockSweeper',
    'DownloadOrchestrator',
    'IntegrityAuditor',
]
