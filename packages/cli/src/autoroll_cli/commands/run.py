"""run command: build the roller from config and tick it."""

from __future__ import annotations

import threading

import click
import requests
from rich.console import Console

from autoroll_core.errors import AutoRollError, ConfigError

console = Console()


def build_code_review(config: dict, gh=None):
    """Instantiate the configured review system (code_review.type)."""
    cr = config.get("code_review") or {}
    cr_type = cr.get("type")

    if cr_type == "gerrit":
        from autoroll_core.codereview.buildbucket import BuildbucketClient
        from autoroll_core.codereview.gerrit import GerritClient, GerritCodeReview, get_gerrit_config

        if not cr.get("url"):
            raise ConfigError("code_review.url is required for Gerrit.")
        client = GerritClient(
            cr["url"],
            get_gerrit_config(cr.get("config", "chromium")),
            user=config.get("gerrit_user"),
            password=config.get("gerrit_password"),
        )
        buildbucket = BuildbucketClient(cr["buildbucket_url"]) if cr.get("buildbucket_url") else BuildbucketClient()
        return GerritCodeReview(client, buildbucket)

    if cr_type == "github":
        from autoroll_core.codereview.github import GitHubClient, GitHubCodeReview, GitHubConfig

        gh_config = GitHubConfig(
            repo_owner=cr.get("repo_owner", ""),
            repo_name=cr.get("repo_name", ""),
            checks_num=int(cr.get("checks_num", 0)),
            checks_wait_for=list(cr.get("checks_wait_for") or []),
            merge_method_url=cr.get("merge_method_url", ""),
        )
        if not gh_config.repo_owner or not gh_config.repo_name:
            raise ConfigError("code_review.repo_owner and code_review.repo_name are required for GitHub.")
        client = GitHubClient(gh_config.full_name, config.get("github_token"), gh=gh)
        return GitHubCodeReview(client, gh_config)

    raise ConfigError(f"Unknown code_review.type {cr_type!r}")


def build_repo_manager(config: dict, gh=None):
    """Instantiate the configured repo manager (repo_manager.type)."""
    from autoroll_core.config import load_commit_msg_template

    rm = config.get("repo_manager") or {}
    if rm.get("type") != "github":
        raise ConfigError(f"Unknown repo_manager.type {rm.get('type')!r}")

    from github import Github

    from autoroll_core.repo_manager.github import DEFAULT_ROLL_BRANCH, GitHubRepoManager

    for key in ("parent_repo", "child_repo", "revision_file"):
        if not rm.get(key):
            raise ConfigError(f"repo_manager.{key} is required.")
    return GitHubRepoManager(
        gh or Github(config.get("github_token")),
        parent_repo=rm["parent_repo"],
        child_repo=rm["child_repo"],
        revision_file=rm["revision_file"],
        child_name=config["child_name"],
        parent_name=config["parent_name"],
        parent_branch=rm.get("parent_branch", "main"),
        child_branch=rm.get("child_branch", "main"),
        roll_branch=rm.get("roll_branch", DEFAULT_ROLL_BRANCH),
        server_url=config.get("server_url", ""),
        commit_msg_template=load_commit_msg_template(config),
    )


def build_roller(config: dict, store, metrics=None):
    from autoroll_cli.auth import require_github_token, uses_github
    from autoroll_core.config import validate_config
    from autoroll_core.notifier import notifier_from_config
    from autoroll_core.roller import AutoRoller

    validate_config(config)
    if uses_github(config):
        require_github_token(config)
    return AutoRoller(
        config,
        store,
        code_review=build_code_review(config),
        repo_manager=build_repo_manager(config),
        notifier=notifier_from_config(config),
        metrics=metrics,
    )


@click.command("run")
@click.option("--once", is_flag=True, default=False, help="Run a single tick and exit.")
@click.pass_context
def run_cmd(ctx, once: bool):
    """Run the roller.

    With --once, refresh the sheriff, run one tick and exit non-zero if it
    failed. Otherwise start the tick, sheriff, repo-refresh and (when
    supports_manual_rolls is set) manual-roll loops until interrupted.
    """
    from autoroll_core.metrics import Metrics

    config = ctx.obj["config"]
    store = ctx.obj["store"]

    try:
        roller = build_roller(config, store, metrics=Metrics(config.get("roller_name") or ""))
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    if once:
        from github import GithubException

        roller.refresh_sheriff()
        try:
            roller.tick()
        except (AutoRollError, GithubException, requests.RequestException) as e:
            console.print(f"[red]Tick failed:[/red] {e}")
            ctx.exit(1)
        console.print(f"[green]Tick complete.[/green] State: [bold]{roller.state}[/bold]")
        return

    stop = threading.Event()
    repeaters = roller.start(stop)
    console.print(f"[bold]{roller.roller}[/bold] running. Press Ctrl-C to stop.")
    try:
        while not stop.wait(1):
            pass
    except KeyboardInterrupt:
        console.print("[yellow]Stopping...[/yellow]")
        stop.set()
    for r in repeaters:
        r.join(timeout=5)
