import copy
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

from autoroll_core.errors import ConfigError
from autoroll_core.notifier import NotifierConfig
from autoroll_core.strategy import STRATEGIES
from autoroll_core.time_window import TimeWindow

DEFAULT_CONFIG: dict = {
    "roller_name": None,
    "child_name": None,
    "parent_name": None,
    "server_url": "",  # where the roller's dashboard lives, linked from commit messages
    "sheriff": [],  # emails or lookup URLs; "$SHERIFF" in notifier configs expands to these
    "sheriff_backup": [],
    "default_strategy": "batch",
    "n_batch_size": 20,
    "max_roll_frequency": "0s",  # minimum interval between landed rolls; 0 disables
    "time_window": "",  # e.g. "M-F 09:00-17:00 America/Los_Angeles"; empty = always
    "safety_throttle": {"attempt_count": 3, "time_window": "30m"},
    "failure_throttle": {"attempt_count": 1, "time_window": "1h"},
    "supports_manual_rolls": False,
    "max_not_rolled_revs": 50,
    "tick_interval": "5m",
    "manual_roll_interval": "1m",
    "sheriff_refresh_interval": "30m",
    "repo_refresh_interval": "5m",
    "cq_extra_trybots": [],
    "commit_msg_template": None,  # None = use built-in default; set to a path string to override
    "code_review": {},
    "repo_manager": {},
    "notifiers": [],
    "smtp": {"host": "localhost", "port": 25, "sender": "autoroll@localhost", "user": None, "starttls": False},
    "store": "sqlite",
    "store_path": ".autoroll.db",
    "gist_id": None,
}

CODE_REVIEW_TYPES = ("gerrit", "github")
REPO_MANAGER_TYPES = ("github",)
STORE_TYPES = ("sqlite", "gist", "memory")

_DURATION_RE = re.compile(r"(\d+)([dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


def load_config(config_path: str = ".autoroll.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .autoroll.yml in the current directory
      3. CLI argument overrides
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping, got {type(file_config).__name__}.")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["gerrit_user"] = os.environ.get("GERRIT_USER")
    config["gerrit_password"] = os.environ.get("GERRIT_PASSWORD")
    config["smtp_password"] = os.environ.get("SMTP_PASSWORD")

    return config


def parse_duration(value) -> timedelta:
    """Parse "1h30m"-style durations. Plain numbers are seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    text = str(value).strip().replace(" ", "")
    if not text:
        raise ConfigError("Empty duration.")
    if text.isdigit():
        return timedelta(seconds=int(text))
    pos = 0
    kwargs: dict = {}
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        unit = _DURATION_UNITS[m.group(2)]
        kwargs[unit] = kwargs.get(unit, 0) + int(m.group(1))
        pos = m.end()
    if pos != len(text) or not kwargs:
        raise ConfigError(f"Invalid duration {value!r}; expected something like '1h30m'.")
    return timedelta(**kwargs)


def load_commit_msg_template(config: dict) -> Optional[str]:
    """
    Load a custom commit message template.

    Returns None when no template is configured, so the caller falls back to
    the built-in default.
    """
    custom_path = config.get("commit_msg_template")
    if not custom_path:
        return None
    p = Path(custom_path)
    if not p.exists():
        raise ConfigError(f"Commit message template not found: {custom_path}")
    return p.read_text()


def validate_config(config: dict) -> None:
    """Raise ConfigError describing the first problem found in config."""
    for key in ("roller_name", "child_name", "parent_name"):
        if not config.get(key):
            raise ConfigError(f"{key} is required.")

    code_review = config.get("code_review") or {}
    if code_review.get("type") not in CODE_REVIEW_TYPES:
        raise ConfigError(
            f"code_review.type must be one of {', '.join(CODE_REVIEW_TYPES)}; got {code_review.get('type')!r}."
        )
    repo_manager = config.get("repo_manager") or {}
    if repo_manager and repo_manager.get("type") not in REPO_MANAGER_TYPES:
        raise ConfigError(
            f"repo_manager.type must be one of {', '.join(REPO_MANAGER_TYPES)}; got {repo_manager.get('type')!r}."
        )

    if config.get("default_strategy") not in STRATEGIES:
        raise ConfigError(
            f"default_strategy must be one of {', '.join(STRATEGIES)}; got {config.get('default_strategy')!r}."
        )
    if config.get("store") not in STORE_TYPES:
        raise ConfigError(f"store must be one of {', '.join(STORE_TYPES)}; got {config.get('store')!r}.")
    if config.get("store") == "gist" and not config.get("gist_id"):
        raise ConfigError("gist_id is required when store is 'gist'.")

    try:
        TimeWindow.parse(config.get("time_window") or "")
    except ValueError as e:
        raise ConfigError(f"Invalid time_window: {e}") from e

    for key in ("safety_throttle", "failure_throttle"):
        throttle = config.get(key) or {}
        count = throttle.get("attempt_count")
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ConfigError(f"{key}.attempt_count must be a non-negative integer; got {count!r}.")
        parse_duration(throttle.get("time_window", "0s"))

    for key in (
        "max_roll_frequency",
        "tick_interval",
        "manual_roll_interval",
        "sheriff_refresh_interval",
        "repo_refresh_interval",
    ):
        parse_duration(config.get(key))

    if int(config.get("max_not_rolled_revs") or 0) < 1:
        raise ConfigError("max_not_rolled_revs must be at least 1.")

    for i, n in enumerate(config.get("notifiers") or []):
        if not isinstance(n, dict):
            raise ConfigError(f"notifiers[{i}] must be a mapping.")
        try:
            NotifierConfig.from_dict(n).validate()
        except ConfigError as e:
            raise ConfigError(f"notifiers[{i}]: {e}") from e
