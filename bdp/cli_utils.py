"""
Common CLI utilities and decorators for consistent command behavior.
"""

import json
import sys
from functools import wraps
from typing import Any, Generator

import click

from .exit_codes import SUCCESS, INTERRUPTED, CommandError, get_exit_code_for_exception
from .format_utils import format_output, get_format_from_env
from .progress import get_progress


def _emit(result: Any, output_format: str) -> None:
    if isinstance(result, Generator):
        items = result
    elif isinstance(result, (list, tuple)):
        items = iter(result)
    elif isinstance(result, dict):
        items = iter([result])
    else:
        print(result, flush=True)
        return
    for line in format_output(items, output_format):
        print(line, flush=True)


def standard_command(func):
    """
    Decorator that provides standard CLI behavior:
    - Progress reporting on stderr (``progress`` is injected)
    - JSONL (or --format json/yaml) on stdout
    - --format table: the command renders itself and returns None
    - Consistent error handling: CommandError subclasses become a JSON
      error object on stdout and their exit code
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        verbose = kwargs.get('verbose', False)
        quiet = kwargs.get('quiet', False)
        output_format = kwargs.get('output_format') or get_format_from_env('jsonl')
        kwargs['output_format'] = output_format

        progress = get_progress(enabled=True if verbose else None)
        kwargs['progress'] = progress

        try:
            result = func(*args, **kwargs)

            if quiet:
                if isinstance(result, Generator):
                    for _ in result:
                        pass
            elif result is not None and output_format != 'table':
                _emit(result, output_format)

            sys.exit(SUCCESS)

        except KeyboardInterrupt:
            progress.error("Interrupted by user")
            sys.exit(INTERRUPTED)
        except click.ClickException:
            raise
        except CommandError as e:
            progress.error(str(e))
            if not quiet:
                error_obj = {
                    "error": str(e),
                    "type": type(e).__name__,
                    "exit_code": e.exit_code,
                }
                if hasattr(e, 'succeeded'):
                    error_obj['succeeded'] = e.succeeded
                    error_obj['failed'] = e.failed
                if hasattr(e, 'to_dict'):
                    error_obj.update(e.to_dict())
                print(json.dumps(error_obj, ensure_ascii=False), flush=True)
            sys.exit(e.exit_code)
        except Exception as e:
            progress.error(f"Command failed: {e}")
            if not quiet:
                print(json.dumps({"error": str(e), "type": type(e).__name__}, ensure_ascii=False), flush=True)
            sys.exit(get_exit_code_for_exception(e))

    return wrapper


# Standard options that many commands share
common_options = {
    'verbose': click.option('-v', '--verbose', is_flag=True,
                            help='Force progress output even when piped'),
    'quiet': click.option('-q', '--quiet', is_flag=True,
                          help='Suppress data output, show only progress'),
    'dry_run': click.option('--dry-run', is_flag=True,
                            help='Preview changes without touching the cache'),
    'format': click.option('-f', '--format', 'output_format',
                           type=click.Choice(['jsonl', 'json', 'yaml', 'table']),
                           help='Output format (default: jsonl, or from BDP_FORMAT env)'),
    'project': click.option('-C', '--project', 'project_dir', default='.',
                            type=click.Path(file_okay=False),
                            help='Project directory (default: current directory)'),
}


def add_common_options(*option_names):
    """
    Decorator to add common options to a command.

    Example:
        @add_common_options('verbose', 'format')
        def my_command(verbose, output_format):
            ...
    """
    def decorator(func):
        for name in reversed(option_names):
            if name in common_options:
                func = common_options[name](func)
        return func
    return decorator


def records_then(records, error=None) -> Generator[Any, None, None]:
    """Stream ``records``, then raise ``error`` (if any) so the exit code reflects it."""
    yield from records
    if error is not None:
        raise error
