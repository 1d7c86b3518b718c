"""
Pull command: resolve bdp.yml, write bdl.lock, download what is missing.

Output is one JSONL record per stage (resolution, lockfile, changed
aggregate trees, download summary, eviction summary). A batch with failed
or deferred files exits with the transient-failure code after printing
its records; re-running the command resumes where it stopped.
"""

import click

from ..api import Project
from ..cli_utils import add_common_options, records_then, standard_command
from ..render import console, render_operation_summary
from ..services.download_service import summarize_failures


@click.command("pull")
@click.option('--lock-only', is_flag=True, help='Resolve and write bdl.lock without downloading')
@click.option('--force', is_flag=True, help='Download again even when files are already cached')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def pull_cmd(lock_only, force, project_dir, verbose, quiet, output_format, progress):
    """Resolve the manifest and download every pinned file."""
    project = Project(project_dir)

    def report(done, result):
        progress(f"  [{done}] {result.spec}: {result.status.value}")

    progress("Resolving manifest...")
    if lock_only:
        result = project.lock()
    else:
        result = project.pull(force=force, on_complete=report)

    failure = summarize_failures(result.download) if result.download is not None else None

    if output_format == 'table':
        resolution = result.resolution
        console.print(
            f"Resolved [bold]{len(resolution.directs)}[/bold] entries into "
            f"{len(resolution.files())} files ({len(resolution.trees)} aggregates, "
            f"{resolution.tree_cache_hits} from the local tree cache)"
        )
        console.print(f"{project.lockfile_path}: {'updated' if result.update.written else 'unchanged'}")
        if result.download is not None:
            render_operation_summary(result.download)
        if result.eviction is not None:
            render_operation_summary(result.eviction)
        if failure is not None:
            raise failure
        return None

    return records_then(result.records(), failure)
