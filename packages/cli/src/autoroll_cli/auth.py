"""Credential resolution for the roller.

GitHub token resolution order (stops at first success):
  1. GITHUB_TOKEN environment variable (CI / explicit override)
  2. `gh auth token` (GitHub CLI session, after `gh auth login`)

Gerrit credentials come from GERRIT_USER / GERRIT_PASSWORD; when those are
unset the Gerrit client falls back to ~/.netrc on its own.
"""

from __future__ import annotations

import logging
import os
import subprocess

import click

logger = logging.getLogger(__name__)


def resolve_github_token() -> str | None:
    """Return a GitHub token or None if no valid source is available.

    Never raises; callers that need a token use require_github_token().
    """
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        logger.debug("gh CLI unavailable; no GitHub token from a CLI session.")
        return None
    if result.returncode == 0 and result.stdout.strip():
        logger.debug("Resolved GitHub token via gh CLI session.")
        return result.stdout.strip()
    return None


def uses_github(config: dict) -> bool:
    code_review = config.get("code_review") or {}
    repo_manager = config.get("repo_manager") or {}
    return code_review.get("type") == "github" or repo_manager.get("type") == "github"


def require_github_token(config: dict) -> str:
    """Return the configured GitHub token or raise a UsageError explaining how to set one."""
    token = config.get("github_token")
    if not token:
        raise click.UsageError(
            "This roller talks to GitHub but no token was found. "
            "Set GITHUB_TOKEN or run `gh auth login`."
        )
    return token
