"""Shared utilities for Mnemos CLI commands."""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from ..config import CONFIG_FILENAME, get_base_path, load_config
from ..service import MemoryService

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

LOG_LEVELS = {
    VERBOSITY_QUIET: logging.ERROR,
    VERBOSITY_NORMAL: logging.WARNING,
    VERBOSITY_VERBOSE: logging.DEBUG,
}


def configure_logging(verbosity: int) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(verbosity, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if verbosity >= VERBOSITY_VERBOSE:
        click.echo(message)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if verbosity >= VERBOSITY_NORMAL:
        click.echo(message)


def echo_quiet(message: str, verbosity: int) -> None:
    """Print a message that is shown even in quiet mode."""
    click.echo(message)


def require_initialized(ctx: click.Context) -> Path:
    base_path = get_base_path(ctx.obj.get('data_dir'))
    if not (base_path / CONFIG_FILENAME).exists():
        click.echo(click.style("Error: Mnemos not initialized. Run 'mnemos init' first.", fg="red"), err=True)
        sys.exit(1)
    return base_path


def run_with_service(ctx: click.Context, action: Callable[[MemoryService], Awaitable[Any]]) -> Any:
    """Open the service for the configured data dir, run action, drain and close."""
    base_path = require_initialized(ctx)

    async def _run() -> Any:
        service = await MemoryService.open(load_config(base_path))
        try:
            result = await action(service)
            await service.drain()
            return result
        finally:
            await service.close()

    try:
        return asyncio.run(_run())
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


def truncate(text: str, width: int = 80) -> str:
    return text if len(text) <= width else text[:width - 3] + "..."
