"""
SourceSpec domain object for bdp.

A source specification names one requestable data source or tool:

    organization:name[-format]@version

Examples:
    uniprot:P01308-fasta@1.0     -> format pinned to "fasta"
    uniprot:all-fasta@1.0        -> aggregate source, fasta variant
    ncbi:blast@2.14.0            -> default identity, no file variant pinned

The format is always the segment after the last '-' in the name part.
SourceSpec values are immutable and compare structurally.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from ..errors import ParseError

_SEGMENT_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.]*$')
_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
_FORMAT_RE = re.compile(r'^[a-z0-9][a-z0-9_.]*$')
_VERSION_RE = re.compile(r'^[A-Za-z0-9]+([._+-][A-Za-z0-9]+)*$')


@dataclass(frozen=True)
class SourceSpec:
    """
    Parsed ``organization:name[-format]@version``.

    Attributes:
        organization: Registry organization (e.g., "uniprot")
        name: Source or tool name (e.g., "P01308")
        version: Internal version (e.g., "1.0")
        format: Optional file variant (e.g., "fasta")
    """
    organization: str
    name: str
    version: str
    format: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> 'SourceSpec':
        """
        Parse a spec string.

        Raises:
            ParseError: naming the offending part of the input
        """
        return parse_spec(text)

    @property
    def identity(self) -> str:
        """Canonical string form, used as the resolved identity."""
        return str(self)

    @property
    def package_key(self) -> Tuple[str, str]:
        """(organization, name), the grouping used for conflict detection."""
        return (self.organization, self.name)

    @property
    def is_pinned(self) -> bool:
        """True when a file variant (format) is part of the spec."""
        return self.format is not None

    def __str__(self) -> str:
        name = f"{self.name}-{self.format}" if self.format else self.name
        return f"{self.organization}:{name}@{self.version}"


def parse_spec(text: str) -> SourceSpec:
    """Parse ``organization:name[-format]@version`` into a SourceSpec."""
    if not isinstance(text, str):
        raise ParseError(f"Source spec must be a string, got {type(text).__name__}", str(text), str(text))

    raw = text.strip()
    if not raw:
        raise ParseError("Source spec is empty", text, text)

    if raw.count(':') != 1:
        raise ParseError(
            f"Expected 'organization:name[-format]@version', got '{raw}'",
            text, raw,
        )
    organization, rest = raw.split(':', 1)

    if not organization:
        raise ParseError(f"Organization is empty in '{raw}'", text, raw)
    if not _SEGMENT_RE.match(organization):
        raise ParseError(f"Invalid organization '{organization}' in '{raw}'", text, organization)

    if rest.count('@') != 1:
        offending = rest if '@' not in rest else rest[rest.index('@'):]
        raise ParseError(f"Expected exactly one '@version' in '{raw}'", text, offending)
    name_part, version = rest.split('@', 1)

    if not version:
        raise ParseError(f"Version is empty in '{raw}'", text, '@')
    if not _VERSION_RE.match(version):
        raise ParseError(f"Malformed version '{version}' in '{raw}'", text, version)

    fmt: Optional[str] = None
    name = name_part
    if '-' in name_part:
        name, fmt = name_part.rsplit('-', 1)
        if not fmt:
            raise ParseError(f"Format is empty in '{raw}'", text, name_part)
        if not _FORMAT_RE.match(fmt):
            raise ParseError(f"Format must be lowercase, got '{fmt}' in '{raw}'", text, fmt)

    if not name:
        raise ParseError(f"Name is empty in '{raw}'", text, name_part or raw)
    if not _NAME_RE.match(name):
        raise ParseError(f"Invalid name '{name}' in '{raw}'", text, name)

    return SourceSpec(organization=organization, name=name, version=version, format=fmt)


def is_valid_spec(text: str) -> bool:
    """Check a spec string without raising."""
    try:
        parse_spec(text)
    except ParseError:
        return False
    return True
