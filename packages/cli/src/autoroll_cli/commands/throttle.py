"""throttle command: hold off new rolls for a while."""

from __future__ import annotations

from datetime import datetime, timezone

import click
from rich.console import Console

console = Console()


@click.command("throttle")
@click.argument("duration")
@click.pass_context
def throttle_cmd(ctx, duration: str):
    """Stop uploading new rolls for DURATION (e.g. 2h, 1d12h), starting at the next tick."""
    from autoroll_core.config import parse_duration
    from autoroll_core.errors import ConfigError

    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    try:
        delta = parse_duration(duration)
    except ConfigError as e:
        raise click.BadParameter(str(e), param_hint="DURATION") from e
    until = datetime.now(timezone.utc) + delta
    store.request_throttle(roller, until.isoformat())
    console.print(f"[yellow]{roller} will be throttled until {until:%Y-%m-%d %H:%M} UTC.[/yellow]")
