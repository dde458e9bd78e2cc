"""Setup commands for Mnemos CLI."""
import asyncio

import click

from ..config import get_base_path, load_config, write_default_config
from ..storage.row_store import RowStore
from .common import echo_normal


@click.group()
def session_group():
    """Setup commands."""
    pass


@session_group.command("init")
@click.pass_context
def init(ctx) -> None:
    """Initialize the data directory.

    Creates the following:
    - the data directory (default ~/.mnemos)
    - config.yaml with default settings
    - the SQLite database
    """
    verbosity = ctx.obj['verbosity']
    base_path = get_base_path(ctx.obj.get('data_dir'))

    echo_normal(click.style("Initializing Mnemos...", fg="cyan", bold=True), verbosity)
    config_path = write_default_config(base_path)
    echo_normal(f" ✓ Config: {config_path}", verbosity)

    config = load_config(base_path)

    async def _create_db() -> None:
        row_store = await RowStore.open(config.db_path, config.enable_wal)
        await row_store.close()

    asyncio.run(_create_db())
    echo_normal(f" ✓ Database: {config.db_path}", verbosity)
    echo_normal(click.style("Ready.", fg="green", bold=True), verbosity)
