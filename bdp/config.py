#!/usr/bin/env python3

import os
import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import logging
import sys

import toml
import yaml

from .database.connection import get_db_path
from .exit_codes import ConfigError
from .infra.file_store import atomic_write_text

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr) # Default to stderr
    ]
)
logger = logging.getLogger("bdp")

CONFIG_FILENAMES = ['config.json', 'config.toml', 'config.yaml', 'config.yml']

# Project-relative locations
PROJECT_DIR = '.bdp'
TREE_CACHE_FILENAME = 'resolved-dependencies.json'


def get_config_path() -> Path:
    """Get the path to the configuration file.

    Checks in order:
    1. BDP_CONFIG environment variable
    2. ~/.bdp/config.{json,toml,yaml,yml}
    """
    # Check for environment variable override
    if os.environ.get('BDP_CONFIG'):
        return Path(os.environ['BDP_CONFIG']).expanduser()

    bdp_dir = Path.home() / '.bdp'
    for filename in CONFIG_FILENAMES:
        path = bdp_dir / filename
        if path.exists() and path.stat().st_size > 0:
            return path

    # If no file exists, return default path for saving
    return bdp_dir / 'config.json'


def read_config_file(config_path: Path) -> dict:
    """Parse one config file (JSON, YAML or TOML by suffix) without defaults."""
    suffix = config_path.suffix.lower()
    if suffix == '.toml':
        with open(config_path, 'rb') as f:
            return tomllib.load(f)
    with open(config_path, 'r', encoding='utf-8') as f:
        if suffix in ('.yaml', '.yml'):
            return yaml.safe_load(f) or {}
        return json.load(f)


def load_config(config_path: Optional[Path] = None) -> dict:
    """
    Load configuration: defaults, then the config file, then BDP_* env vars.

    Raises:
        ConfigError: if the config file exists but cannot be parsed
    """
    config_path = config_path or get_config_path()

    # Start with default config
    config = get_default_config()

    # Load from file if it exists
    if config_path.exists():
        try:
            file_config = read_config_file(config_path)
        except (OSError, ValueError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Error loading config from {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        # Merge file config with defaults
        config = merge_configs(config, file_config)

    # Apply environment variable overrides
    config = apply_env_overrides(config)

    apply_logging_config(config)
    return config


def save_config(config: dict, config_path: Optional[Path] = None) -> Path:
    """
    Save configuration to file.

    Raises:
        ConfigError: if the file cannot be written
    """
    config_path = config_path or get_config_path()
    suffix = config_path.suffix.lower()

    if suffix == '.toml':
        text = toml.dumps(config)
    elif suffix in ('.yaml', '.yml'):
        text = yaml.safe_dump(config, default_flow_style=False, sort_keys=True)
    else:
        text = json.dumps(config, indent=2, sort_keys=True) + '\n'

    try:
        atomic_write_text(config_path, text)
    except OSError as e:
        raise ConfigError(f"Error saving config to {config_path}: {e}") from e

    logger.info(f"Configuration saved to {config_path}")
    return config_path


def get_default_config() -> dict:
    """Get default configuration."""
    return {
        "registry": {
            "url": "http://localhost:8000/api/v1",
            "timeout_seconds": 300,
            "page_size": 1000,
            "max_retries": 4,
            "base_delay_seconds": 1.0,
            "max_delay_seconds": 30.0,
        },
        "cache": {
            "root": "",                 # empty = project-local .bdp/cache
            "max_size_bytes": 0,        # 0 = unlimited
            "auto_evict": False,
            "lock_ttl_seconds": 300,
            "lock_wait_attempts": 10,
            "lock_poll_seconds": 0.5,
            "sweep_interval_seconds": 60,
        },
        "download": {
            "concurrency": 4,
            "checksum_retries": 1,
            "resume_retries": 5,
            "chunk_size": 1024 * 1024,
        },
        "logging": {
            "level": "INFO",
        },
    }


def merge_configs(base_config, override_config):
    """
    Recursively merge two configuration dictionaries.

    Args:
        base_config (dict): Base configuration
        override_config (dict): Configuration to merge/override with

    Returns:
        dict: Merged configuration
    """
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            # Recursively merge nested dictionaries
            merged[key] = merge_configs(merged[key], value)
        else:
            # Override or add new key
            merged[key] = value

    return merged


def coerce_value(value: str) -> Any:
    """Convert a string from the environment or command line to bool/int/float."""
    if value.lower() in ('true', 'yes', 'on'):
        return True
    if value.lower() in ('false', 'no', 'off'):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def apply_env_overrides(config):
    """
    Apply environment variable overrides to configuration.
    Environment variables follow the pattern: BDP_SECTION_KEY
    For example: BDP_DOWNLOAD_CONCURRENCY=8 or BDP_CACHE_ROOT=/shared/bdp
    """
    env_prefix = "BDP_"

    for env_key, value in os.environ.items():
        if not env_key.startswith(env_prefix):
            continue

        key_parts = env_key[len(env_prefix):].lower().split('_')

        current_level = config
        i = 0
        while i < len(key_parts):
            # Find the longest key in current_level that is a prefix of the remaining key_parts
            best_match_len = 0
            matched_key = None

            for config_key in current_level.keys():
                config_key_parts_from_key = config_key.split('_')
                if key_parts[i : i + len(config_key_parts_from_key)] == config_key_parts_from_key:
                    if len(config_key_parts_from_key) > best_match_len:
                        best_match_len = len(config_key_parts_from_key)
                        matched_key = config_key

            if matched_key:
                # If we are at the end of the env var, we have found the key to set
                if i + best_match_len == len(key_parts):
                    # Strings stay strings (cache.root, registry.url)
                    if isinstance(current_level[matched_key], str):
                        current_level[matched_key] = value
                    else:
                        current_level[matched_key] = coerce_value(value)
                    break

                # Otherwise, we descend into the dictionary
                if isinstance(current_level[matched_key], dict):
                    current_level = current_level[matched_key]
                    i += best_match_len
                else:
                    # Path conflict, e.g., env var is longer but we found a non-dict value
                    break
            else:
                # No match found
                break

    return config


def apply_logging_config(config: dict) -> None:
    level = str((config.get('logging') or {}).get('level', 'INFO')).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))


def get_config_value(config: dict, dotted_key: str) -> Any:
    """
    Look up ``section.key`` in a config dict.

    Raises:
        ConfigError: if any segment is missing
    """
    current: Any = config
    for part in dotted_key.split('.'):
        if not isinstance(current, dict) or part not in current:
            raise ConfigError(f"Unknown config key: {dotted_key}")
        current = current[part]
    return current


def set_config_value(config: dict, dotted_key: str, value: str) -> Any:
    """
    Set ``section.key`` from a string, typed like the default it replaces.

    Only keys present in the default config can be set.
    """
    defaults = get_default_config()
    default = get_config_value(defaults, dotted_key)
    if isinstance(default, dict):
        raise ConfigError(f"{dotted_key} is a section, not a key")

    if isinstance(default, str):
        typed: Any = value
    else:
        typed = coerce_value(value)
        if isinstance(default, bool) and not isinstance(typed, bool):
            raise ConfigError(f"{dotted_key} expects true or false, got '{value}'")
        if isinstance(default, (int, float)) and not isinstance(default, bool) \
                and (isinstance(typed, bool) or not isinstance(typed, (int, float))):
            raise ConfigError(f"{dotted_key} expects a number, got '{value}'")

    parts = dotted_key.split('.')
    current = config
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = typed
    return typed


@dataclass(frozen=True)
class CachePaths:
    """Where cached files, the tracking database and the audit log live."""
    root: Path          # holds sources/ and tools/
    db_path: Path
    audit_log: Path
    shared: bool = False


def resolve_cache_paths(config: dict, project_dir: Union[str, Path, None] = None) -> CachePaths:
    """
    Resolve cache locations.

    With ``cache.root`` set to R: R/sources, R/tools, R/bdp.db, R/audit.log.
    Otherwise everything sits under the project's .bdp directory.
    BDP_DB overrides the database path in both cases.
    """
    project = Path(project_dir or '.')
    root_setting = (config.get('cache') or {}).get('root')

    db_path = get_db_path(config, project)

    if root_setting:
        root = Path(root_setting).expanduser()
        return CachePaths(root=root, db_path=db_path, audit_log=root / "audit.log", shared=True)

    base = project / PROJECT_DIR
    return CachePaths(root=base / "cache", db_path=db_path, audit_log=base / "audit.log")


def tree_cache_path(project_dir: Union[str, Path, None] = None) -> Path:
    return Path(project_dir or '.') / PROJECT_DIR / TREE_CACHE_FILENAME
