"""stats command: aggregate results across roll history."""

from __future__ import annotations

from collections import Counter

import click
from rich.console import Console
from rich.table import Table

from autoroll_cli.commands.status import styled_result
from autoroll_store.models import ROLL_RESULTS

console = Console()


@click.command("stats")
@click.option("--limit", default=100, show_default=True, help="Number of most recent rolls to include.")
@click.pass_context
def stats_cmd(ctx, limit: int):
    """Show roll result counts and the current failure streak.

    The streak counts consecutive failed rolls, newest first, up to the most
    recent success; in-progress rolls are skipped.
    """
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")

    rolls = store.list_rolls(roller, limit=limit)
    if not rolls:
        console.print("[yellow]No roll records found for this roller.[/yellow]")
        return

    results: Counter[str] = Counter(r.result for r in rolls)
    streak = 0
    for r in rolls:
        if r.failed():
            streak += 1
        elif r.succeeded():
            break

    finished = sum(1 for r in rolls if r.closed)
    landed = sum(1 for r in rolls if r.committed)

    console.print(f"\n[bold]Roll stats for [cyan]{roller}[/cyan][/bold]")
    console.print(f"  Total rolls:    {len(rolls)}")
    console.print(f"  Landed:         {landed}")
    if finished:
        console.print(f"  Landing rate:   {landed / finished * 100:.1f}% of closed rolls")
    console.print(f"  Failure streak: {streak}")

    table = Table(title="Results", show_header=True)
    table.add_column("Result", style="bold")
    table.add_column("Count", justify="right")
    table.add_column("% of total", justify="right")
    for result in ROLL_RESULTS:
        count = results.get(result, 0)
        if not count:
            continue
        table.add_row(styled_result(result), str(count), f"{count / len(rolls) * 100:.1f}%")
    console.print(table)
