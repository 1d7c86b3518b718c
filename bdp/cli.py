#!/usr/bin/env python3

import click

from bdp import __version__
from bdp.commands.init import init_cmd
from bdp.commands.source import source_cmd
from bdp.commands.pull import pull_cmd
from bdp.commands.verify import verify_cmd
from bdp.commands.cache import cache_cmd
from bdp.commands.config import config_cmd


@click.group()
@click.version_option(version=__version__, prog_name="bdp")
def cli():
    """bdp - Pin, download and verify biological data sources.

    Lists data sources and tools in bdp.yml, pins them in bdl.lock and
    keeps a checksum-verified local (or team-shared) cache of the files.
    """
    pass


# Project workflow
cli.add_command(init_cmd)
cli.add_command(pull_cmd)
cli.add_command(pull_cmd, name='install')
cli.add_command(verify_cmd)

# Command groups
cli.add_command(source_cmd)
cli.add_command(cache_cmd)
cli.add_command(config_cmd)


def main():
    cli()

if __name__ == "__main__":
    main()
