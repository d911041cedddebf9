"""comment command: attach a note to a roll record (not posted to the CL)."""

from __future__ import annotations

import getpass

import click
from rich.console import Console

console = Console()


@click.command("comment")
@click.argument("issue", type=int)
@click.argument("message")
@click.option("--user", default=getpass.getuser, show_default="current user", help="Comment author.")
@click.pass_context
def comment_cmd(ctx, issue: int, message: str, user: str):
    """Attach MESSAGE to the roll record for ISSUE."""
    from autoroll_core.recent_rolls import RecentRolls

    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    try:
        RecentRolls(store, roller).add_comment(issue, message, user)
    except KeyError as e:
        raise click.UsageError(f"No such issue {issue} for {roller}.") from e
    console.print(f"[green]Comment added to {issue}.[/green]")
