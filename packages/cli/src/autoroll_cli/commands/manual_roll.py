"""manual-roll command: queue a request to roll to a specific revision."""

from __future__ import annotations

import getpass
import uuid

import click
from rich.console import Console

from autoroll_store.models import ManualRollRequest

console = Console()


@click.command("manual-roll")
@click.argument("revision", required=False)
@click.option("--user", default=getpass.getuser, show_default="current user", help="Who is requesting the roll.")
@click.option("--list", "list_requests", is_flag=True, default=False, help="List requests instead of adding one.")
@click.pass_context
def manual_roll_cmd(ctx, revision: str | None, user: str, list_requests: bool):
    """Request a roll to REVISION, or list requests with --list.

    The running roller picks the request up on its manual-roll loop, which
    only runs when supports_manual_rolls is set in the configuration.
    """
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    if list_requests:
        for req in store.list_manual_rolls(roller):
            if revision is None or revision == req.revision:
                console.print(f"{req.id}  {req.revision[:12]}  {req.status:<9} {req.result or '-':<8} {req.url}")
        return

    if not revision:
        raise click.UsageError("REVISION is required unless --list is given.")

    if not config.get("supports_manual_rolls"):
        console.print("[yellow]supports_manual_rolls is not set; the roller will not act on this request.[/yellow]")

    req = ManualRollRequest(id=uuid.uuid4().hex, roller=roller, revision=revision, requester=user)
    store.put_manual_roll(req)
    console.print(f"[green]Requested a manual roll to [bold]{revision}[/bold] ({req.id}).[/green]")
