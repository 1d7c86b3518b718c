"""
Cache commands: inspect and clean the shared content cache.

Cleanup never waits on a lease: files locked by a running download are
skipped and reported, so cleaning is safe next to other bdp processes.
"""

import click

from ..api import Project
from ..cli_utils import add_common_options, standard_command
from ..database.audit import EVENT_TYPES
from ..domain.entry import SOURCE, TOOL
from ..domain.records import iso
from ..format_utils import parse_duration, parse_size
from ..render import (
    render_cache_entries,
    render_locks,
    render_operation_summary,
    render_stats,
    render_table,
)


@click.group("cache")
def cache_cmd():
    """Inspect and maintain the local or shared cache."""
    pass


@cache_cmd.command("stats")
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def cache_stats(project_dir, verbose, quiet, output_format, progress):
    """Show entry counts, sizes and lock state."""
    stats = Project(project_dir).store.stats()
    if output_format == 'table':
        render_stats(stats)
        return None
    return dict(stats, type='cache_stats')


@cache_cmd.command("list")
@click.option('--kind', type=click.Choice([SOURCE, TOOL]), help='Only sources or only tools')
@click.option('--sort', 'order_by', type=click.Choice(['spec', 'last_accessed', 'size']),
              default='spec', show_default=True, help='Sort order')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def cache_list(kind, order_by, project_dir, verbose, quiet, output_format, progress):
    """List cached files."""
    entries = Project(project_dir).store.list_entries(kind=kind, order_by=order_by)
    if output_format == 'table':
        render_cache_entries(entries)
        return None
    return (entry.to_dict() for entry in entries)


@cache_cmd.command("clean")
@click.argument('spec', required=False)
@click.option('--unreferenced', is_flag=True, help='Remove files bdl.lock no longer pins')
@click.option('--older-than', help='Remove files cached longer ago than this (e.g. 30d, 12h)')
@click.option('--max-size', help='Evict least recently used files down to this size (e.g. 50G)')
@click.option('--all', 'remove_all', is_flag=True, help='Remove every cached file')
@add_common_options('project', 'dry_run', 'verbose', 'quiet', 'format')
@standard_command
def cache_clean(spec, unreferenced, older_than, max_size, remove_all, project_dir, dry_run,
                verbose, quiet, output_format, progress):
    """
    Remove cached files.

    Pick exactly one of SPEC, --unreferenced, --older-than, --max-size or
    --all. Use --dry-run to see what would go.
    """
    chosen = [bool(spec), unreferenced, older_than is not None, max_size is not None, remove_all]
    if sum(chosen) != 1:
        raise click.UsageError("Choose exactly one of SPEC, --unreferenced, --older-than, --max-size, --all")

    project = Project(project_dir)
    store = project.store
    if spec:
        summary = store.remove_spec(spec, dry_run=dry_run)
    elif unreferenced:
        summary = project.clean_unreferenced(dry_run=dry_run)
    elif older_than is not None:
        try:
            seconds = parse_duration(older_than)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--older-than')
        summary = store.remove_older_than(seconds, dry_run=dry_run)
    elif max_size is not None:
        try:
            budget = parse_size(max_size)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--max-size')
        summary = store.evict_to_size(budget, dry_run=dry_run)
    else:
        summary = store.remove_all(dry_run=dry_run)

    if output_format == 'table':
        render_operation_summary(summary, show_skipped=True)
        return None
    return [d.to_dict() for d in summary.details] + [summary.to_dict()]


@cache_cmd.command("locks")
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def cache_locks(project_dir, verbose, quiet, output_format, progress):
    """List lease locks, live and expired."""
    store = Project(project_dir).store
    locks = store.list_locks()
    now = store.clock()
    if output_format == 'table':
        render_locks(locks, now)
        return None
    return [dict(lock.to_dict(), expired=lock.is_expired(now)) for lock in locks]


@cache_cmd.command("sweep-locks")
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def cache_sweep_locks(project_dir, verbose, quiet, output_format, progress):
    """Delete expired lease locks now."""
    removed = Project(project_dir).store.sweep_locks()
    progress(f"Removed {removed} expired locks")
    return {'type': 'sweep_locks', 'removed': removed}


@cache_cmd.command("events")
@click.option('--spec', help='Only events for this resolved identity')
@click.option('--type', 'event_type', type=click.Choice(EVENT_TYPES), help='Only events of this type')
@click.option('--limit', type=int, default=100, show_default=True, help='Most recent N events')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def cache_events(spec, event_type, limit, project_dir, verbose, quiet, output_format, progress):
    """Show the cache audit log, newest first."""
    events = Project(project_dir).store.events(spec=spec, event_type=event_type, limit=limit)
    if output_format == 'table':
        render_table(
            ['Time', 'Event', 'Spec', 'Machine'],
            [[iso(e.timestamp), e.event_type, e.spec or e.cache_path or '', e.machine_id] for e in events],
            title="Cache audit log",
        )
        return None
    return (event.to_dict() for event in events)
