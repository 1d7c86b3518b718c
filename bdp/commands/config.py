import json
import tomllib

import click
import yaml

from ..cli_utils import add_common_options, standard_command
from ..config import (
    get_config_path,
    get_config_value,
    load_config,
    read_config_file,
    resolve_cache_paths,
    save_config,
    set_config_value,
)
from ..exit_codes import ConfigError


@click.group("config")
def config_cmd():
    """Configuration management commands."""
    pass


@config_cmd.command("show")
@click.option("--pretty", is_flag=True, help="Display as formatted JSON instead of single-line JSONL")
def show_config(pretty):
    """Show the current configuration with all merges applied.

    Includes defaults, the config file and BDP_* environment overrides.
    """
    config = load_config()
    if pretty:
        print(json.dumps(config, indent=2, ensure_ascii=False))
    else:
        print(json.dumps(config, ensure_ascii=False))


@config_cmd.command("path")
def config_path():
    """Show the config file path being used."""
    print(json.dumps({"config_path": str(get_config_path())}))


@config_cmd.command("get")
@click.argument("key")
@add_common_options('verbose', 'quiet', 'format')
@standard_command
def get_value(key, verbose, quiet, output_format, progress):
    """Print one value, e.g. `bdp config get cache.root`."""
    return {"key": key, "value": get_config_value(load_config(), key)}


@config_cmd.command("set")
@click.argument("key")
@click.argument("value")
@add_common_options('verbose', 'quiet', 'format')
@standard_command
def set_value(key, value, verbose, quiet, output_format, progress):
    """Set KEY to VALUE in the config file.

    Only the file is changed; environment overrides still win when set.
    Example: `bdp config set cache.root /shared/bdp` moves the cache to a
    team volume.
    """
    path = get_config_path()
    raw = {}
    if path.exists():
        try:
            raw = read_config_file(path) or {}
        except (OSError, ValueError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Error loading config from {path}: {e}") from e

    typed = set_config_value(raw, key, value)
    save_config(raw, path)
    progress.success(f"Set {key} = {typed!r} in {path}")

    result = {"key": key, "value": typed, "config_path": str(path)}
    if key == "cache.root":
        paths = resolve_cache_paths(load_config())
        result["cache_root"] = str(paths.root)
        result["database"] = str(paths.db_path)
    return result
