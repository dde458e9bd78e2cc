"""Mnemos CLI - long-term memory engine command line interface.

Command modules:
- session.py: init
- memory.py: store, recall, stats, export
- maintenance.py: decay, reflect, maintain, backfill
- graph.py: graph, merge-entities
- common.py: shared utilities
"""
from pathlib import Path

import click

from .. import __version__
from .common import (
    VERBOSITY_NORMAL,
    VERBOSITY_QUIET,
    VERBOSITY_VERBOSE,
    configure_logging,
)
from .graph import graph_group
from .maintenance import maintenance_group
from .memory import memory_group
from .session import session_group


@click.group()
@click.version_option(version=__version__, prog_name="mnemos")
@click.option('--data-dir', type=click.Path(), default=None, envvar='MNEMOS_BASE_PATH',
              help='Base directory for Mnemos data (default: ~/.mnemos)')
@click.option('--user', '-u', default='default', envvar='MNEMOS_USER', show_default=True,
              help='User id whose memories to operate on')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, data_dir, user, verbose, quiet):
    """Mnemos - long-term memory engine

    \b
    Key Commands:
        init              Create data directory, config and database
        store             Store a memory
        recall            Search memories
        stats             Per-user statistics
        export            Dump memories as JSON
        decay / reflect   Run maintenance jobs
        graph             Show the entity graph
        merge-entities    Fold entity aliases

    \b
    Examples:
        mnemos init
        mnemos store "Alice's favorite language is Rust" --sector factual
        mnemos recall "favorite language"
    """
    ctx.ensure_object(dict)

    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['data_dir'] = Path(data_dir) if data_dir else None
    ctx.obj['user'] = user
    configure_logging(ctx.obj['verbosity'])


cli.add_command(session_group.commands['init'])

for name in ('store', 'recall', 'stats', 'export'):
    cli.add_command(memory_group.commands[name])

for name in ('decay', 'reflect', 'maintain', 'backfill'):
    cli.add_command(maintenance_group.commands[name])

cli.add_command(graph_group.commands['graph'])
cli.add_command(graph_group.commands['merge-entities'])


def main():
    """Entry point for the CLI."""
    cli()


__all__ = ['cli', 'main']
