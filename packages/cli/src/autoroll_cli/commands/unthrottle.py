"""unthrottle command: ask the running roller to reset its throttles."""

from __future__ import annotations

import click
from rich.console import Console

console = Console()


@click.command("unthrottle")
@click.pass_context
def unthrottle_cmd(ctx):
    """Clear the safety, failure and success throttles at the next tick."""
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")
    store.reset_throttle_request(roller)
    store.request_unthrottle(roller)
    console.print(f"[green]{roller} will be unthrottled at its next tick.[/green]")
