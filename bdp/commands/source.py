"""
Source commands: edit the sources and tools lists of bdp.yml.

Specs are validated and canonicalized before they are written; a spec
already listed is reported rather than duplicated.
"""

import click

from ..api import Project
from ..cli_utils import add_common_options, standard_command
from ..manifest import SOURCES, TOOLS
from ..render import render_table


def _section(tool: bool) -> str:
    return TOOLS if tool else SOURCES


@click.group("source")
def source_cmd():
    """Manage the data sources and tools listed in bdp.yml."""
    pass


@source_cmd.command("add")
@click.argument('spec')
@click.option('--tool', is_flag=True, help='Add to the tools list instead of sources')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def add_source(spec, tool, project_dir, verbose, quiet, output_format, progress):
    """Add SPEC (organization:name[-format]@version) to the manifest."""
    project = Project(project_dir)
    added = project.add_source(spec, _section(tool))
    if added:
        progress.success(f"Added {spec}; run 'bdp pull' to resolve it")
    else:
        progress.warning(f"{spec} is already listed")
    return {'type': 'source', 'action': 'added' if added else 'unchanged',
            'spec': spec, 'section': _section(tool)}


@source_cmd.command("remove")
@click.argument('spec')
@click.option('--tool', is_flag=True, help='Remove from the tools list instead of sources')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def remove_source(spec, tool, project_dir, verbose, quiet, output_format, progress):
    """Remove SPEC from the manifest."""
    project = Project(project_dir)
    removed = project.remove_source(spec, _section(tool))
    if not removed:
        raise click.BadParameter(f"{spec} is not listed in {_section(tool)}", param_hint='SPEC')
    return {'type': 'source', 'action': 'removed', 'spec': spec, 'section': _section(tool)}


@source_cmd.command("list")
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def list_sources(project_dir, verbose, quiet, output_format, progress):
    """List manifest entries, with their pinned versions when locked."""
    project = Project(project_dir)
    manifest = project.manifest()
    lockfile = None
    if project.lockfile_path.exists():
        lockfile = project.load_lockfile()

    records = []
    for section, specs in ((SOURCES, manifest.sources), (TOOLS, manifest.tools)):
        pinned = lockfile.section(section) if lockfile else {}
        for spec in specs:
            entry = pinned.get(spec)
            record = {'type': 'source', 'section': section, 'spec': spec, 'locked': entry is not None}
            if entry is not None:
                record.update(entry.to_dict())
            records.append(record)

    if output_format == 'table':
        render_table(
            ['Section', 'Spec', 'Locked', 'Checksum', 'Size'],
            [[r['section'], r['spec'], 'yes' if r['locked'] else 'no',
              r.get('checksum', ''), r.get('size', '')] for r in records],
            title=f"{manifest.name} {manifest.version}",
        )
        return None
    return records
