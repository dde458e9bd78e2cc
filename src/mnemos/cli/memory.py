"""Memory commands for Mnemos CLI: store, recall, stats, export."""
import json
from pathlib import Path
from typing import Optional, Tuple

import click

from ..storage.models import SECTORS
from ..timeframe import TIMEFRAMES
from .common import echo_normal, echo_quiet, echo_verbose, run_with_service, truncate

SECTOR_COLORS = {
    'episodic': 'green',
    'semantic': 'blue',
    'factual': 'cyan',
    'procedural': 'magenta',
    'reflective': 'yellow',
}


@click.group()
def memory_group():
    """Memory management commands."""
    pass


@memory_group.command("store")
@click.argument('content')
@click.option('--sector', '-s', default='semantic', type=click.Choice(SECTORS),
              help='Memory sector')
@click.option('--tag', '-t', 'tags', multiple=True, help='Tag (repeatable)')
@click.pass_context
def store(ctx, content: str, sector: str, tags: Tuple[str, ...]) -> None:
    """Store a memory.

    Examples:
        mnemos store "Alice's favorite language is Rust" --sector factual
        mnemos store "Deploys go out on Fridays" -t work
    """
    verbosity = ctx.obj['verbosity']
    memory_id = run_with_service(
        ctx, lambda service: service.store_rich(ctx.obj['user'], content, sector=sector, tags=list(tags))
    )
    if memory_id is None:
        echo_quiet(click.style("Error: memory could not be stored (see log)", fg="red"), verbosity)
        ctx.exit(1)
    echo_normal(click.style("✓ Memory stored", fg="green", bold=True), verbosity)
    echo_quiet(memory_id, verbosity)


@memory_group.command("recall")
@click.argument('query')
@click.option('--limit', '-l', default=10, help='Maximum number of results')
@click.option('--sector', '-s', 'sectors', multiple=True, type=click.Choice(SECTORS),
              help='Restrict to sector (repeatable)')
@click.option('--min-strength', type=float, default=None, help='Minimum strength')
@click.option('--tag', '-t', default=None, help='Exact tag match (skips vector search)')
@click.option('--timeframe', type=click.Choice(TIMEFRAMES), default=None, help='Event time window')
@click.option('--depth', type=int, default=None, help='Graph enrichment depth')
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def recall(ctx, query: str, limit: int, sectors: Tuple[str, ...], min_strength: Optional[float],
           tag: Optional[str], timeframe: Optional[str], depth: Optional[int], json_output: bool) -> None:
    """Search memories.

    Examples:
        mnemos recall "favorite language"
        mnemos recall "*" --timeframe this_week
        mnemos recall "" --tag work --json-output
    """
    verbosity = ctx.obj['verbosity']
    results = run_with_service(ctx, lambda service: service.recall_rich(
        ctx.obj['user'], query, limit=limit, sectors=list(sectors) or None,
        min_strength=min_strength, graph_depth=depth, tag=tag, timeframe=timeframe,
    ))

    if json_output:
        click.echo(json.dumps([m.to_dict() for m in results], indent=2, default=str))
        return

    echo_normal(click.style(f"Search Results ({len(results)} found)", fg="cyan", bold=True), verbosity)
    for i, memory in enumerate(results, 1):
        label = click.style(memory.sector.upper(), fg=SECTOR_COLORS.get(memory.sector, 'white'))
        echo_quiet(f"{i}. [{label}] {truncate(memory.text)}", verbosity)
        echo_normal(f"   strength {memory.strength:.2f} · recalled {memory.recall_count}x · {memory.id}",
                    verbosity)
    if not results:
        echo_normal(click.style("No memories found. Try a different query.", fg="yellow"), verbosity)


@memory_group.command("stats")
@click.option('--json-output', is_flag=True, help='Output as JSON')
@click.pass_context
def stats(ctx, json_output: bool) -> None:
    """Show per-user memory statistics."""
    verbosity = ctx.obj['verbosity']
    data = run_with_service(ctx, lambda service: service.get_stats(ctx.obj['user']))
    if json_output:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    echo_quiet(click.style(f"Memory stats for {ctx.obj['user']}", fg="cyan", bold=True), verbosity)
    echo_quiet(f"  Total: {data['total']}  (archived {data['archived']})", verbosity)
    echo_quiet(f"  Average strength: {data['avg_strength']:.3f}", verbosity)
    echo_quiet(f"  Entities: {data['entity_count']}", verbosity)
    for sector, count in data['by_sector'].items():
        echo_normal(f"    {sector:<11} {count}", verbosity)
    echo_normal(f"  Last decay: {data['last_decay'] or 'never'}", verbosity)
    echo_normal(f"  Last reflection: {data['last_reflection'] or 'never'}", verbosity)
    echo_verbose(f"  Vector index degraded: {data['degraded']}", verbosity)
    echo_verbose(f"  Pending background jobs: {data['pending_jobs']}", verbosity)


@memory_group.command("export")
@click.option('--output', '-o', type=click.Path(dir_okay=False), default=None,
              help='Write JSON to a file instead of stdout')
@click.pass_context
def export(ctx, output: Optional[str]) -> None:
    """Export every memory of the user (archived included) as JSON."""
    verbosity = ctx.obj['verbosity']
    rows = run_with_service(ctx, lambda service: service.export_memories(ctx.obj['user']))
    text = json.dumps(rows, indent=2, default=str)
    if output:
        Path(output).write_text(text)
        echo_normal(click.style(f"✓ Exported {len(rows)} memories to {output}", fg="green"), verbosity)
    else:
        click.echo(text)
