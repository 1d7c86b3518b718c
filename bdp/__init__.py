"""
bdp - Client engine for the BDP biological data registry.

bdp resolves the data sources and tools a project lists in bdp.yml into a
pinned lockfile (bdl.lock), downloads them into a content cache with
resumable, checksum-verified transfers, and keeps that cache honest.

Quick Start:
    import bdp

    project = bdp.Project(".")
    project.init(name="my-analysis")
    project.add_source("uniprot:P01308-fasta@1.0")

    result = project.pull()
    for record in result.records():
        print(record)

    # Re-hash everything the lockfile pins
    outcome = project.verify()
    print(outcome.audit.counts())

Domain Objects:
    SourceSpec - Parsed organization:name[-format]@version
    ResolvedEntry - What the registry says about one spec
    DependencyGraph - Deduplicated graph of one resolution

Services:
    DependencyResolver - Manifest to dependency graph
    LockfileManager - bdl.lock and the local dependency-tree cache
    CacheStore - On-disk cache, tracking database and lease locks
    DownloadOrchestrator - Parallel, resumable downloads
    IntegrityAuditor - Verify the cache against the lockfile
"""

__version__ = "0.1.0"

from .api import Project, PullResult, create
from .domain import SourceSpec, ResolvedEntry, DependencyRef, DependencyGraph, parse_spec
from .services import (
    DependencyResolver,
    LockfileManager,
    TreeCache,
    CacheStore,
    DownloadOrchestrator,
    IntegrityAuditor,
)

__all__ = [
    '__version__',
    'Project',
    'PullResult',
    'create',
    'SourceSpec',
    'ResolvedEntry',
    'DependencyRef',
    'DependencyGraph',
    'parse_spec',
    'DependencyResolver',
    'LockfileManager',
    'TreeCache',
    'CacheStore',
    'DownloadOrchestrator',
    'IntegrityAuditor',
]
