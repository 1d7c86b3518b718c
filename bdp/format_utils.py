"""
Output format utilities for bdp CLI commands.

Provides JSONL/JSON/YAML formatting plus the human-facing helpers the
commands share: byte sizes and ``--older-than`` durations.
"""

import json
import os
import re
from typing import Any, Dict, Iterator

import yaml

FORMATS = ('jsonl', 'json', 'yaml', 'table')

_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$', re.IGNORECASE)
_DURATION_UNITS = {
    '': 1,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
    'w': 604800,
}


def format_output(data: Iterator[Dict[str, Any]], format: str) -> Iterator[str]:
    """
    Format data according to the specified format.

    Yields:
        Formatted strings for output
    """
    if format == "jsonl":
        yield from format_jsonl(data)
    elif format == "json":
        yield from format_json(data)
    elif format == "yaml":
        yield from format_yaml(data)
    else:
        raise ValueError(f"Unknown format: {format}")


def format_jsonl(data: Iterator[Dict[str, Any]]) -> Iterator[str]:
    """Format data as JSON Lines (one JSON object per line)."""
    for item in data:
        yield json.dumps(item, ensure_ascii=False)


def format_json(data: Iterator[Dict[str, Any]]) -> Iterator[str]:
    """Format data as a single JSON array."""
    yield json.dumps(list(data), ensure_ascii=False, indent=2)


def format_yaml(data: Iterator[Dict[str, Any]]) -> Iterator[str]:
    """Format data as YAML."""
    yield yaml.safe_dump(list(data), default_flow_style=False, allow_unicode=True, sort_keys=False)


def get_format_from_env(default: str = 'jsonl') -> str:
    """
    Get output format from the BDP_FORMAT environment variable.

    Unknown values fall back to ``default``.
    """
    format = os.environ.get('BDP_FORMAT', default).lower()
    if format not in FORMATS:
        return default
    return format


def format_size(num_bytes: int) -> str:
    """Human-readable byte count: 1536 -> '1.5 KiB'."""
    size = float(num_bytes)
    for unit in ('B', 'KiB', 'MiB', 'GiB', 'TiB'):
        if abs(size) < 1024 or unit == 'TiB':
            return f"{int(size)} {unit}" if unit == 'B' else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


def parse_duration(text: str) -> float:
    """
    Parse '30d', '12h', '90m', '45s', '2w' or a bare number of seconds.

    Raises:
        ValueError: for anything else
    """
    match = _DURATION_RE.match(text or '')
    if not match:
        raise ValueError(f"Invalid duration '{text}' (expected e.g. 30d, 12h, 90m)")
    value, unit = match.groups()
    return float(value) * _DURATION_UNITS[unit.lower()]


def parse_size(text: str) -> int:
    """
    Parse '500M', '10G', '1.5T', '2048' (bytes) into a byte count.

    Suffixes are binary (K = 1024).

    Raises:
        ValueError: for anything else
    """
    match = re.match(r'^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$', text or '', re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size '{text}' (expected e.g. 500M, 10G)")
    value, unit = match.groups()
    power = ' KMGT'.index(unit.upper()) if unit else 0
    return int(float(value) * (1024 ** power))
