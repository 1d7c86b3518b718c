"""
Project manifest (bdp.yml) handling.

The manifest is user-edited and committed:

    project:
      name: my-analysis
      version: 0.1.0
    sources:
      - uniprot:P01308-fasta@1.0
    tools:
      - ncbi:blast@2.14.0
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .domain.spec import SourceSpec, parse_spec
from .errors import ManifestError, ParseError
from .infra.file_store import atomic_write_text

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "bdp.yml"

SOURCES = "sources"
TOOLS = "tools"


@dataclass
class Manifest:
    """In-memory bdp.yml."""
    name: str
    version: str = "0.1.0"
    description: Optional[str] = None
    sources: List[str] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)

    def validate(self) -> None:
        """
        Check project fields and every spec string.

        Raises:
            ManifestError: if the project block is incomplete
            ParseError: for the first malformed spec
        """
        if not self.name or not str(self.name).strip():
            raise ManifestError("Project name cannot be empty")
        if not self.version or not str(self.version).strip():
            raise ManifestError("Project version cannot be empty")
        for spec in self.sources + self.tools:
            parse_spec(spec)

    def source_specs(self) -> List[SourceSpec]:
        return [parse_spec(s) for s in self.sources]

    def tool_specs(self) -> List[SourceSpec]:
        return [parse_spec(s) for s in self.tools]

    def _section(self, kind: str) -> List[str]:
        if kind == SOURCES:
            return self.sources
        if kind == TOOLS:
            return self.tools
        raise ValueError(f"Unknown manifest section: {kind}")

    def add(self, spec: str, kind: str = SOURCES) -> bool:
        """
        Add a spec to a section after validating it.

        Returns:
            False if the spec was already present
        """
        canonical = str(parse_spec(spec))
        section = self._section(kind)
        if canonical in section:
            return False
        section.append(canonical)
        return True

    def remove(self, spec: str, kind: str = SOURCES) -> bool:
        """Remove a spec; returns False if it was not listed."""
        section = self._section(kind)
        try:
            canonical = str(parse_spec(spec))
        except ParseError:
            canonical = spec
        for candidate in (canonical, spec):
            if candidate in section:
                section.remove(candidate)
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        project: Dict[str, Any] = {'name': self.name, 'version': self.version}
        if self.description:
            project['description'] = self.description
        return {
            'project': project,
            SOURCES: list(self.sources),
            TOOLS: list(self.tools),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a mapping with a 'project' section")
        project = data.get('project')
        if not isinstance(project, dict):
            raise ManifestError("Manifest is missing the 'project' section")

        sources = data.get(SOURCES) or []
        tools = data.get(TOOLS) or []
        if not isinstance(sources, list) or not isinstance(tools, list):
            raise ManifestError("'sources' and 'tools' must be lists of spec strings")

        return cls(
            name=str(project.get('name') or ''),
            version=str(project.get('version') or ''),
            description=project.get('description'),
            sources=[str(s) for s in sources],
            tools=[str(t) for t in tools],
        )


def load_manifest(path: Union[str, Path] = MANIFEST_FILENAME) -> Manifest:
    """
    Load and validate bdp.yml.

    Raises:
        ManifestError: if the file is missing or not valid YAML
        ParseError: if a spec string is malformed
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"No manifest found at {path}. Run 'bdp init' first.")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e

    manifest = Manifest.from_dict(data)
    manifest.validate()
    logger.debug(f"Loaded manifest {path}: {len(manifest.sources)} sources, {len(manifest.tools)} tools")
    return manifest


def save_manifest(manifest: Manifest, path: Union[str, Path] = MANIFEST_FILENAME) -> None:
    """Write bdp.yml atomically."""
    manifest.validate()
    text = yaml.safe_dump(manifest.to_dict(), default_flow_style=False, sort_keys=False)
    atomic_write_text(path, text)
