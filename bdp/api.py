"""
High-level Python API for bdp.

Wires configuration, the registry client and the services together for
one project directory.

Example:
    import bdp

    project = bdp.Project("~/analysis")
    project.add_source("uniprot:P01308-fasta@1.0")
    result = project.pull()
    print(result.download.successful, "files downloaded")

    audit = project.verify()
    print(audit.counts())

    # Low-level access to services
    project.resolver
    project.store
    project.orchestrator
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .config import load_config, tree_cache_path
from .domain.operation import AuditSummary, OperationSummary
from .errors import ManifestError
from .gitignore import ensure_gitignore
from .infra.registry_client import RegistryClient
from .lockfile import LOCKFILE_NAME, Lockfile, load_lockfile
from .manifest import MANIFEST_FILENAME, SOURCES, Manifest, load_manifest, save_manifest
from .services import (
    CacheStore,
    DependencyResolver,
    DownloadOrchestrator,
    IntegrityAuditor,
    LockfileManager,
    LockfileUpdate,
    Resolution,
    TreeCache,
)

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    """What one ``pull`` did: resolve, lock, download and optionally evict."""
    resolution: Resolution
    update: LockfileUpdate
    download: Optional[OperationSummary] = None
    eviction: Optional[OperationSummary] = None

    def records(self) -> List[Dict[str, Any]]:
        """JSONL records, one per stage."""
        records = [self.resolution.to_dict(), self.update.to_dict()]
        records.extend(d.to_dict() for d in self.update.diffs if d.changed)
        if self.download is not None:
            records.append(self.download.to_dict())
        if self.eviction is not None:
            records.append(self.eviction.to_dict())
        return records


@dataclass
class VerifyOutcome:
    audit: AuditSummary
    repair: Optional[OperationSummary] = None
    unrepaired: List[str] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)


class Project:
    """
    A bdp project: bdp.yml, bdl.lock and the cache they point at.

    Args:
        project_dir: Directory holding bdp.yml (default: current directory)
        config: Full config dict (overrides the config file if provided)
        config_path: Path to a config file
        registry: Registry client (default: built from config)
    """

    def __init__(
        self,
        project_dir: Union[str, Path] = ".",
        config: Optional[Dict[str, Any]] = None,
        config_path: Optional[Path] = None,
        registry=None,
    ):
        self.project_dir = Path(project_dir).expanduser()
        self.config = config if config is not None else load_config(config_path)
        self._registry = registry
        self._store: Optional[CacheStore] = None
        self._tree_cache: Optional[TreeCache] = None

    # -- Paths and components ---------------------------------------------

    @property
    def manifest_path(self) -> Path:
        return self.project_dir / MANIFEST_FILENAME

    @property
    def lockfile_path(self) -> Path:
        return self.project_dir / LOCKFILE_NAME

    @property
    def registry(self):
        if self._registry is None:
            self._registry = RegistryClient.from_config(self.config)
        return self._registry

    @property
    def store(self) -> CacheStore:
        if self._store is None:
            self._store = CacheStore.from_config(self.config, self.project_dir)
        return self._store

    @property
    def tree_cache(self) -> TreeCache:
        if self._tree_cache is None:
            self._tree_cache = TreeCache(tree_cache_path(self.project_dir))
        return self._tree_cache

    @property
    def resolver(self) -> DependencyResolver:
        page_size = (self.config.get('registry') or {}).get('page_size')
        return DependencyResolver(self.registry, tree_cache=self.tree_cache, page_size=page_size)

    @property
    def lockfile_manager(self) -> LockfileManager:
        return LockfileManager(self.lockfile_path, self.tree_cache)

    @property
    def orchestrator(self) -> DownloadOrchestrator:
        return DownloadOrchestrator.from_config(self.registry, self.store, self.config)

    @property
    def auditor(self) -> IntegrityAuditor:
        return IntegrityAuditor(self.store, self.tree_cache)

    # -- Manifest ---------------------------------------------------------

    def init(self, name: Optional[str] = None, version: str = "0.1.0",
             description: Optional[str] = None, force: bool = False) -> Manifest:
        """
        Write a starter bdp.yml and the bdp section of .gitignore.

        Raises:
            ManifestError: if bdp.yml exists and ``force`` is not set
        """
        if self.manifest_path.exists() and not force:
            raise ManifestError(f"{self.manifest_path} already exists")
        self.project_dir.mkdir(parents=True, exist_ok=True)
        manifest = Manifest(
            name=name or self.project_dir.resolve().name,
            version=version,
            description=description,
        )
        save_manifest(manifest, self.manifest_path)
        added = ensure_gitignore(self.project_dir)
        if added:
            logger.debug(f"Added {len(added)} patterns to .gitignore")
        return manifest

    def manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def add_source(self, spec: str, kind: str = SOURCES) -> bool:
        manifest = self.manifest()
        added = manifest.add(spec, kind)
        if added:
            save_manifest(manifest, self.manifest_path)
        return added

    def remove_source(self, spec: str, kind: str = SOURCES) -> bool:
        manifest = self.manifest()
        removed = manifest.remove(spec, kind)
        if removed:
            save_manifest(manifest, self.manifest_path)
        return removed

    # -- Resolution and download ------------------------------------------

    def resolve(self) -> Resolution:
        manifest = self.manifest()
        return self.resolver.resolve(manifest.source_specs(), manifest.tool_specs())

    def lock(self) -> PullResult:
        """Resolve and write bdl.lock without downloading."""
        resolution = self.resolve()
        update = self.lockfile_manager.write(resolution)
        return PullResult(resolution=resolution, update=update)

    def pull(self, download: bool = True, force: bool = False, on_complete=None) -> PullResult:
        """
        Resolve the manifest, write the lockfile and tree cache, then
        download every file not already cached.

        Structural errors (parse, conflict, cycle) raise before anything is
        written or downloaded. ``force`` downloads cached files again.
        """
        result = self.lock()
        if not download:
            return result

        result.download = self.orchestrator.run(result.resolution.files(), force=force,
                                               on_complete=on_complete)

        cache = self.config.get('cache') or {}
        max_size = int(cache.get('max_size_bytes') or 0)
        if cache.get('auto_evict') and max_size > 0:
            result.eviction = self.store.evict_to_size(max_size)
        return result

    # -- Verification and cleanup -----------------------------------------

    def load_lockfile(self) -> Lockfile:
        return load_lockfile(self.lockfile_path)

    def verify(self, repair: bool = False, on_result=None) -> VerifyOutcome:
        """Audit the cache against bdl.lock; optionally re-download problems."""
        lockfile = self.load_lockfile()
        auditor = self.auditor
        audit = auditor.verify(lockfile, on_result=on_result)
        outcome = VerifyOutcome(audit=audit)
        outcome.records = [r.to_dict() for r in audit.problems]
        if repair and not audit.success:
            outcome.repair = auditor.repair(lockfile, audit, self.orchestrator)
            missing_trees = {spec for spec, _checksum in auditor.missing_trees(lockfile)}
            outcome.unrepaired = [r.spec for r in audit.problems if r.spec in missing_trees]
        outcome.records.append(audit.to_dict())
        if outcome.repair is not None:
            outcome.records.append(outcome.repair.to_dict())
        return outcome

    def referenced_identities(self) -> Set[str]:
        """Every cached identity the current lockfile still needs."""
        lockfile = self.load_lockfile()
        return {e.resolved_identity for e in self.auditor.targets(lockfile)}

    def clean_unreferenced(self, dry_run: bool = False) -> OperationSummary:
        return self.store.remove_unreferenced(self.referenced_identities(), dry_run=dry_run)


def create(project_dir: Union[str, Path] = ".", **kwargs) -> Project:
    """Create a Project instance."""
    return Project(project_dir, **kwargs)
