"""Maintenance commands for Mnemos CLI: decay, reflect, maintain, backfill."""
import click

from .common import echo_normal, echo_quiet, run_with_service


@click.group()
def maintenance_group():
    """Maintenance commands."""
    pass


@maintenance_group.command("decay")
@click.pass_context
def decay(ctx) -> None:
    """Run a decay pass now (ignores the daily throttle)."""
    result = run_with_service(ctx, lambda service: service.decay(ctx.obj['user']))
    echo_quiet(f"decayed={result['decayed']} archived={result['archived']} "
               f"reinforced={result['reinforced']}", ctx.obj['verbosity'])


@maintenance_group.command("reflect")
@click.pass_context
def reflect(ctx) -> None:
    """Compress old episodic memories into reflective insights now."""
    result = run_with_service(ctx, lambda service: service.reflect(ctx.obj['user']))
    echo_quiet(f"reflected={result['reflected']} compressed={result['compressed']}",
               ctx.obj['verbosity'])


@maintenance_group.command("maintain")
@click.pass_context
def maintain(ctx) -> None:
    """Run whichever maintenance job is due (scheduler tick)."""
    verbosity = ctx.obj['verbosity']
    result = run_with_service(ctx, lambda service: service.run_maintenance(ctx.obj['user']))
    for job, outcome in result.items():
        if outcome is None:
            echo_normal(f"{job}: not due", verbosity)
        else:
            echo_quiet(f"{job}: " + " ".join(f"{k}={v}" for k, v in outcome.items()), verbosity)


@maintenance_group.command("backfill")
@click.pass_context
def backfill(ctx) -> None:
    """Embed and index memories that never got a vector."""
    count = run_with_service(ctx, lambda service: service.backfill_embeddings(ctx.obj['user']))
    echo_quiet(click.style(f"✓ Indexed {count} memories", fg="green"), ctx.obj['verbosity'])
