"""
Verify command: re-hash cached files against bdl.lock.

Without --repair this only reads and exits with the integrity code when
anything is corrupted or missing. --repair re-downloads those files.
"""

import click

from ..api import Project
from ..cli_utils import add_common_options, records_then, standard_command
from ..errors import IntegrityError
from ..render import render_audit, render_operation_summary
from ..services.download_service import summarize_failures


@click.command("verify")
@click.option('--repair', is_flag=True, help='Re-download corrupted and missing files')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def verify_cmd(repair, project_dir, verbose, quiet, output_format, progress):
    """Check every cached file the lockfile pins."""
    project = Project(project_dir)

    def report(done, result):
        progress(f"  [{done}] {result.spec}: {result.status.value}")

    outcome = project.verify(repair=repair, on_result=report)
    audit = outcome.audit

    error = None
    if outcome.repair is not None:
        error = summarize_failures(outcome.repair)
        if error is None and outcome.unrepaired:
            error = IntegrityError(
                f"No local dependency tree for {', '.join(outcome.unrepaired)}; "
                f"run 'bdp pull' to rebuild it",
                counts=audit.counts(),
            )
    elif not audit.success:
        error = IntegrityError(
            f"{audit.corrupted} corrupted and {audit.missing} missing of {audit.total} files; "
            f"run 'bdp verify --repair' to re-download them",
            counts=audit.counts(),
        )

    if output_format == 'table':
        render_audit(audit)
        if outcome.repair is not None:
            render_operation_summary(outcome.repair)
        if error is not None:
            raise error
        return None

    return records_then(outcome.records, error)
