"""history command: display past roll records from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from autoroll_cli.commands.status import styled_result

console = Console()


@click.command("history")
@click.option("--limit", default=20, show_default=True, help="Maximum number of records to show.")
@click.option("--comments", "show_comments", is_flag=True, default=False, help="Also list comments on each roll.")
@click.pass_context
def history_cmd(ctx, limit: int, show_comments: bool):
    """Show past roll records for this roller, newest first."""
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    rolls = store.list_rolls(roller, limit=limit)
    if not rolls:
        console.print("[yellow]No roll records found.[/yellow]")
        return

    table = Table(title=f"Roll History: {roller}", show_header=True, header_style="bold cyan")
    table.add_column("Issue", style="bold", width=8)
    table.add_column("Subject", max_width=50)
    table.add_column("From", width=12)
    table.add_column("To", width=12)
    table.add_column("Result", width=20)
    table.add_column("Created", width=20)

    for r in rolls:
        table.add_row(
            str(r.issue),
            r.subject[:50] if r.subject else "",
            r.rolling_from[:12],
            r.rolling_to[:12],
            styled_result(r.result),
            r.created[:19].replace("T", " "),
        )

    console.print(table)

    if show_comments:
        for r in rolls:
            for c in r.comments:
                console.print(f"  [bold]{r.issue}[/bold] {c.timestamp[:19].replace('T', ' ')} {c.user}: {c.message}")
