"""Entity graph commands for Mnemos CLI."""
import click

from ..graph import edit_distance_matcher, substring_matcher
from .common import echo_normal, echo_quiet, run_with_service


@click.group()
def graph_group():
    """Entity graph commands."""
    pass


@graph_group.command("graph")
@click.pass_context
def graph(ctx) -> None:
    """Show the user's entities and their relations."""
    text = run_with_service(ctx, lambda service: service.format_entity_graph(ctx.obj['user']))
    echo_quiet(text, ctx.obj['verbosity'])


@graph_group.command("merge-entities")
@click.option('--matcher', type=click.Choice(['substring', 'edit-distance']), default='substring',
              help='Name matching strategy')
@click.option('--max-ratio', type=float, default=0.2,
              help='Edit distance ratio for --matcher edit-distance')
@click.pass_context
def merge_entities(ctx, matcher: str, max_ratio: float) -> None:
    """Fold near-duplicate entity names into one canonical entity."""
    verbosity = ctx.obj['verbosity']
    match_fn = substring_matcher if matcher == 'substring' else edit_distance_matcher(max_ratio)
    merges = run_with_service(ctx, lambda service: service.merge_entities(ctx.obj['user'], match_fn))
    for absorbed, canonical in merges:
        echo_normal(f"  {absorbed} → {canonical}", verbosity)
    echo_quiet(click.style(f"✓ Merged {len(merges)} entities", fg="green"), verbosity)
