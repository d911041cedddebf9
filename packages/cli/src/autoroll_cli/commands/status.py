"""status command: render the latest status snapshot written by the roller."""

from __future__ import annotations

from datetime import datetime, timezone

import click
from rich.console import Console
from rich.table import Table

console = Console()

RESULT_STYLE = {
    "success": "green",
    "dry-run-success": "green",
    "failure": "red",
    "dry-run-failure": "red",
    "in-progress": "yellow",
    "dry-run-in-progress": "yellow",
}


def styled_result(result: str) -> str:
    style = RESULT_STYLE.get(result, "white")
    return f"[{style}]{result or '-'}[/{style}]"


@click.command("status")
@click.pass_context
def status_cmd(ctx):
    """Show the roller's mode, state, revisions and recent rolls."""
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    status = store.get_status(roller)
    if status is None:
        console.print(f"[yellow]No status recorded for {roller} yet. Run `autoroll run --once`.[/yellow]")
        return

    console.print(f"\n[bold]{roller}[/bold]  (updated {status.updated[:19].replace('T', ' ')})")
    console.print(f"  Mode:        {status.mode}")
    console.print(f"  Strategy:    {status.strategy}")
    console.print(f"  State:       [bold]{status.state}[/bold]")
    console.print(f"  Last rolled: {status.last_roll_rev[:12]}")
    console.print(f"  Next roll:   {status.next_roll_rev[:12]}")
    console.print(f"  Tip:         {status.tip_rev[:12]}")
    console.print(f"  Not rolled:  {status.num_not_rolled}")
    console.print(f"  Failed in a row: {status.num_failed_rolls}")
    if status.throttled_until and status.throttled_until > datetime.now(timezone.utc).timestamp():
        until = datetime.fromtimestamp(status.throttled_until, tz=timezone.utc)
        console.print(f"  [yellow]Throttled until {until:%Y-%m-%d %H:%M:%S} UTC[/yellow]")
    if status.current_roll is not None:
        console.print(f"  Current roll: {status.issue_url_base}{status.current_roll.issue}")
    if status.error:
        console.print(f"  [red]Error:[/red] {status.error}")

    if status.recent:
        table = Table(title="Recent Rolls", show_header=True, header_style="bold cyan")
        table.add_column("Issue", style="bold")
        table.add_column("Rolling To", width=12)
        table.add_column("Result")
        table.add_column("Dry Run", justify="center")
        table.add_column("Created", width=20)
        for r in status.recent:
            table.add_row(
                str(r.issue),
                r.rolling_to[:12],
                styled_result(r.result),
                "yes" if r.is_dry_run else "",
                r.created[:19].replace("T", " "),
            )
        console.print(table)
