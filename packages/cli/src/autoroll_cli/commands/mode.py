"""mode and strategy commands: append to the roller's mode/strategy history.

The running roller picks the change up at its next tick. When notifiers are
configured the change is announced right away from this process.
"""

from __future__ import annotations

import getpass

import click
from rich.console import Console

from autoroll_core.errors import ConfigError
from autoroll_core.strategy import STRATEGIES
from autoroll_store.models import VALID_MODES

console = Console()


def _roller_name(config: dict) -> str:
    roller = config.get("roller_name")
    if not roller:
        raise click.UsageError("roller_name is required in the configuration.")
    return roller


def _notifier(config: dict):
    """Return a notifier with the sheriff expanded, or None if none are configured."""
    from autoroll_core.notifier import notifier_from_config
    from autoroll_core.sheriff import get_sheriff

    if not config.get("notifiers"):
        return None
    emails = get_sheriff(list(config.get("sheriff") or []), list(config.get("sheriff_backup") or []))
    try:
        return notifier_from_config(config, emails=emails)
    except ConfigError as e:
        raise click.UsageError(f"Invalid notifier configuration: {e}") from e


@click.command("mode")
@click.argument("mode", type=click.Choice(VALID_MODES))
@click.option("-m", "--message", required=True, help="Why the mode is being changed.")
@click.option("--user", default=getpass.getuser, show_default="current user", help="Who is making the change.")
@click.pass_context
def mode_cmd(ctx, mode: str, message: str, user: str):
    """Change the roller mode: running, dry-run, stopped or offline."""
    from autoroll_core.modes import ModeHistory

    config = ctx.obj["config"]
    store = ctx.obj["store"]
    history = ModeHistory(store, _roller_name(config))
    if history.current().mode == mode:
        console.print(f"[yellow]Mode is already {mode}.[/yellow]")
        return
    change = history.add(mode, user, message)
    console.print(f"[green]Mode set to [bold]{change.mode}[/bold].[/green]")

    notifier = _notifier(config)
    if notifier is not None:
        notifier.send_mode_change(user, mode, message)


@click.command("strategy")
@click.argument("strategy", type=click.Choice(STRATEGIES))
@click.option("-m", "--message", required=True, help="Why the strategy is being changed.")
@click.option("--user", default=getpass.getuser, show_default="current user", help="Who is making the change.")
@click.pass_context
def strategy_cmd(ctx, strategy: str, message: str, user: str):
    """Change the next-roll-revision strategy: batch, n_batch or single."""
    from autoroll_core.strategy import StrategyHistory

    config = ctx.obj["config"]
    store = ctx.obj["store"]
    history = StrategyHistory(store, _roller_name(config), default=config.get("default_strategy") or "batch")
    if history.current().strategy == strategy:
        console.print(f"[yellow]Strategy is already {strategy}.[/yellow]")
        return
    change = history.add(strategy, user, message)
    console.print(f"[green]Strategy set to [bold]{change.strategy}[/bold].[/green]")

    notifier = _notifier(config)
    if notifier is not None:
        notifier.send_strategy_change(user, strategy, message)
