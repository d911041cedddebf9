"""CLI entry point for autoroll.

Commands:
  run          run the roller (one tick with --once, otherwise forever)
  status       show the latest status snapshot written by the roller
  history      list recent roll records
  stats        result counts and the current failure streak
  mode         change the roller mode (running, dry-run, stopped, offline)
  strategy     change the next-roll-revision strategy
  manual-roll  request a roll to a specific revision
  throttle     hold off new rolls for a duration
  unthrottle   clear all throttles at the next tick
  comment      attach a comment to a roll record
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from autoroll_cli.commands.comment import comment_cmd
from autoroll_cli.commands.history import history_cmd
from autoroll_cli.commands.manual_roll import manual_roll_cmd
from autoroll_cli.commands.mode import mode_cmd, strategy_cmd
from autoroll_cli.commands.run import run_cmd
from autoroll_cli.commands.stats import stats_cmd
from autoroll_cli.commands.status import status_cmd
from autoroll_cli.commands.throttle import throttle_cmd
from autoroll_cli.commands.unthrottle import unthrottle_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured store from .autoroll.yml settings.

    Store selection:
      store: sqlite → SQLiteStore (store_path, default .autoroll.db)
      store: gist   → GistStore  (requires gist_id and github_token)
      store: memory → MemoryStore (nothing survives the process)

    This factory lives in cli.py so neither autoroll_core nor autoroll_store
    know about the CLI config format.
    """
    store_type = config.get("store", "sqlite")

    if store_type == "gist":
        from autoroll_store.gist import GistStore

        gist_id = config.get("gist_id")
        token = config.get("github_token")
        if not gist_id or not token:
            raise click.UsageError("GistStore requires gist_id and a GitHub token.")
        return GistStore(gist_id=gist_id, token=token)

    if store_type == "memory":
        from autoroll_store.memory import MemoryStore

        return MemoryStore()

    from autoroll_store.sqlite import SQLiteStore

    return SQLiteStore(db_path=config.get("store_path") or ".autoroll.db")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # PyGithub and urllib3 are noisy at DEBUG.
    for name in ("github", "urllib3"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


@click.group()
@click.version_option(
    version=importlib.metadata.version("autoroll"),
    prog_name="autoroll",
)
@click.option(
    "--config",
    "config_path",
    default=".autoroll.yml",
    show_default=True,
    help="Path to the roller configuration file.",
    envvar="AUTOROLL_CONFIG",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Roll a child repository's revision into a parent repository."""
    from autoroll_cli.auth import resolve_github_token
    from autoroll_core.config import load_config
    from autoroll_core.errors import ConfigError

    _setup_logging(verbose)
    ctx.ensure_object(dict)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.call_on_close(store.close)


main.add_command(run_cmd)
main.add_command(status_cmd)
main.add_command(history_cmd)
main.add_command(stats_cmd)
main.add_command(mode_cmd)
main.add_command(strategy_cmd)
main.add_command(manual_roll_cmd)
main.add_command(throttle_cmd)
main.add_command(unthrottle_cmd)
main.add_command(comment_cmd)
