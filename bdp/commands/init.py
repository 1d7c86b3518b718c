"""
Init command: create bdp.yml and the bdp section of .gitignore.
"""

import click

from ..api import Project
from ..cli_utils import add_common_options, standard_command


@click.command("init")
@click.option('--name', help='Project name (default: directory name)')
@click.option('--version', 'project_version', default='0.1.0', show_default=True,
              help='Project version')
@click.option('--description', help='Short project description')
@click.option('--force', is_flag=True, help='Overwrite an existing bdp.yml')
@add_common_options('project', 'verbose', 'quiet', 'format')
@standard_command
def init_cmd(name, project_version, description, force, project_dir, verbose, quiet,
             output_format, progress):
    """Create a bdp.yml manifest in the project directory."""
    project = Project(project_dir)
    manifest = project.init(name=name, version=project_version, description=description, force=force)
    progress.success(f"Created {project.manifest_path}")

    if output_format == 'table':
        click.echo(f"Initialized bdp project '{manifest.name}' in {project.project_dir}")
        return None
    return {
        'type': 'init',
        'manifest': str(project.manifest_path),
        'name': manifest.name,
        'version': manifest.version,
    }
