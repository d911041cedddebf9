"""Roller notifications.

Each entry under ``notifiers:`` in the config becomes one NotifierConfig: a
filter (minimum severity) or an explicit list of message types, plus exactly
one delivery backend (email or a chat webhook). The roller talks to a single
AutoRollNotifier, which fans each message out to every config that wants it.

A notification that fails to send is logged and dropped; a broken mail
server must never fail a roller tick.
"""

from __future__ import annotations

import copy
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Optional

import requests

from autoroll_core.errors import ConfigError

logger = logging.getLogger(__name__)

MSG_NEW_SUCCESS = "new-success"
MSG_NEW_FAILURE = "new-failure"
MSG_LAST_N_FAILED = "last-n-failed"
MSG_MANUAL_ROLL_STATUS = "manual-roll-status"
MSG_MODE_CHANGE = "mode-change"
MSG_STRATEGY_CHANGE = "strategy-change"
MSG_TYPES = (
    MSG_NEW_SUCCESS,
    MSG_NEW_FAILURE,
    MSG_LAST_N_FAILED,
    MSG_MANUAL_ROLL_STATUS,
    MSG_MODE_CHANGE,
    MSG_STRATEGY_CHANGE,
)

FILTER_DEBUG = "debug"
FILTER_INFO = "info"
FILTER_WARNING = "warning"
FILTER_ERROR = "error"
FILTERS = (FILTER_DEBUG, FILTER_INFO, FILTER_WARNING, FILTER_ERROR)

SEVERITIES = {
    MSG_NEW_SUCCESS: FILTER_INFO,
    MSG_NEW_FAILURE: FILTER_WARNING,
    MSG_LAST_N_FAILED: FILTER_ERROR,
    MSG_MANUAL_ROLL_STATUS: FILTER_INFO,
    MSG_MODE_CHANGE: FILTER_INFO,
    MSG_STRATEGY_CHANGE: FILTER_INFO,
}

SHERIFF_PLACEHOLDER = "$SHERIFF"


@dataclass
class EmailNotifierConfig:
    emails: list[str] = field(default_factory=list)


@dataclass
class ChatNotifierConfig:
    webhook_url: str = ""


@dataclass
class NotifierConfig:
    filter: str = ""
    msg_types: list[str] = field(default_factory=list)
    subject: str = ""
    email: Optional[EmailNotifierConfig] = None
    chat: Optional[ChatNotifierConfig] = None

    def validate(self) -> None:
        if not self.filter and not self.msg_types:
            raise ConfigError("Either filter or msg_types is required.")
        if self.filter and self.msg_types:
            raise ConfigError("Only one of filter or msg_types may be provided.")
        if self.filter and self.filter not in FILTERS:
            raise ConfigError(f"Unknown filter {self.filter!r}")
        for t in self.msg_types:
            if t not in MSG_TYPES:
                raise ConfigError(f"Unknown message type {t!r}")
        backends = [b for b in (self.email, self.chat) if b is not None]
        if len(backends) != 1:
            raise ConfigError(f"Exactly one notification config must be supplied, but got {len(backends)}")
        if self.email is not None and not self.email.emails:
            raise ConfigError("emails is required.")
        if self.chat is not None and not self.chat.webhook_url:
            raise ConfigError("webhook_url is required.")

    def wants(self, msg_type: str) -> bool:
        if self.msg_types:
            return msg_type in self.msg_types
        return FILTERS.index(SEVERITIES[msg_type]) >= FILTERS.index(self.filter)

    def copy(self) -> NotifierConfig:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, d: dict) -> NotifierConfig:
        email = d.get("email")
        chat = d.get("chat")
        return cls(
            filter=d.get("filter") or "",
            msg_types=list(d.get("msg_types") or []),
            subject=d.get("subject") or "",
            email=EmailNotifierConfig(emails=list(email.get("emails") or [])) if isinstance(email, dict) else None,
            chat=ChatNotifierConfig(webhook_url=chat.get("webhook_url") or "") if isinstance(chat, dict) else None,
        )


def replace_sheriff_placeholder(configs: list[NotifierConfig], emails: list[str]) -> list[NotifierConfig]:
    """Return copies of configs with "$SHERIFF" expanded to the given emails."""
    copies = []
    for c in configs:
        c = c.copy()
        if c.email is not None:
            expanded: list[str] = []
            for e in c.email.emails:
                if e == SHERIFF_PLACEHOLDER:
                    expanded.extend(emails)
                else:
                    expanded.append(e)
            c.email.emails = expanded
        copies.append(c)
    return copies


@dataclass
class Message:
    type: str
    subject: str
    body: str


@dataclass
class SMTPSettings:
    host: str = "localhost"
    port: int = 25
    sender: str = "autoroll@localhost"
    user: Optional[str] = None
    password: Optional[str] = None
    starttls: bool = False


def send_email(settings: SMTPSettings, recipients: list[str], subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = settings.sender
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    msg.set_content(body)
    with smtplib.SMTP(settings.host, settings.port, timeout=30) as smtp:
        if settings.starttls:
            smtp.starttls()
        if settings.user and settings.password:
            smtp.login(settings.user, settings.password)
        smtp.send_message(msg)


def send_chat(session: requests.Session, webhook_url: str, subject: str, body: str) -> None:
    resp = session.post(webhook_url, json={"text": f"*{subject}*\n{body}"}, timeout=30)
    resp.raise_for_status()


class AutoRollNotifier:
    """Sends roller events to every configured destination that wants them."""

    def __init__(
        self,
        roller_name: str,
        child_name: str,
        parent_name: str,
        configs: list[NotifierConfig],
        smtp: Optional[SMTPSettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self.roller_name = roller_name
        self.child_name = child_name
        self.parent_name = parent_name
        self.smtp = smtp or SMTPSettings()
        self._session = session or requests.Session()
        self._configs: list[NotifierConfig] = []
        self.reload_configs(configs)

    @property
    def configs(self) -> list[NotifierConfig]:
        return [c.copy() for c in self._configs]

    def reload_configs(self, configs: list[NotifierConfig]) -> None:
        for c in configs:
            c.validate()
        self._configs = [c.copy() for c in configs]

    def _subject(self, config: NotifierConfig, default: str) -> str:
        return config.subject or default

    def send(self, msg: Message) -> None:
        for config in self._configs:
            if not config.wants(msg.type):
                continue
            subject = self._subject(config, msg.subject)
            try:
                if config.email is not None:
                    send_email(self.smtp, config.email.emails, subject, msg.body)
                elif config.chat is not None:
                    send_chat(self._session, config.chat.webhook_url, subject, msg.body)
            except (smtplib.SMTPException, OSError, requests.RequestException) as e:
                logger.error("Failed to send %s notification for %s: %s", msg.type, self.roller_name, e)

    # ------------------------------------------------------------------ #
    # Roller events                                                       #
    # ------------------------------------------------------------------ #

    def send_new_success(self, issue: str, url: str) -> None:
        self.send(
            Message(
                type=MSG_NEW_SUCCESS,
                subject=f"The {self.child_name} into {self.parent_name} AutoRoller has succeeded.",
                body=f"The roll {issue} landed after previous failures:\n{url}",
            )
        )

    def send_new_failure(self, issue: str, url: str) -> None:
        self.send(
            Message(
                type=MSG_NEW_FAILURE,
                subject=f"The {self.child_name} into {self.parent_name} AutoRoller has failed.",
                body=f"The most recent roll attempt failed, while previous attempts succeeded:\n{url}",
            )
        )

    def send_last_n_failed(self, n: int, url: str) -> None:
        self.send(
            Message(
                type=MSG_LAST_N_FAILED,
                subject=f"The last {n} {self.child_name} into {self.parent_name} rolls have failed.",
                body=(
                    "The roll is failing consistently. Time to investigate. "
                    f"The most recent roll attempt is here:\n{url}"
                ),
            )
        )

    def send_manual_roll_status(self, requester: str, revision: str, status: str, url: str) -> None:
        self.send(
            Message(
                type=MSG_MANUAL_ROLL_STATUS,
                subject=f"Manual roll of {self.child_name} to {revision}: {status}",
                body=f"Manual roll requested by {requester} is {status}:\n{url}",
            )
        )

    def send_mode_change(self, user: str, mode: str, message: str) -> None:
        self.send(
            Message(
                type=MSG_MODE_CHANGE,
                subject=f"The {self.child_name} into {self.parent_name} AutoRoller mode was changed",
                body=f"{user} changed the mode to {mode!r} with message: {message}",
            )
        )

    def send_strategy_change(self, user: str, strategy: str, message: str) -> None:
        self.send(
            Message(
                type=MSG_STRATEGY_CHANGE,
                subject=f"The {self.child_name} into {self.parent_name} AutoRoller strategy was changed",
                body=f"{user} changed the next-roll-revision strategy to {strategy!r} with message: {message}",
            )
        )


def notifier_configs_from_config(config: dict) -> list[NotifierConfig]:
    return [NotifierConfig.from_dict(n) for n in config.get("notifiers") or []]


def smtp_settings_from_config(config: dict) -> SMTPSettings:
    smtp = config.get("smtp") or {}
    return SMTPSettings(
        host=smtp.get("host", "localhost"),
        port=int(smtp.get("port", 25)),
        sender=smtp.get("sender", "autoroll@localhost"),
        user=smtp.get("user"),
        password=config.get("smtp_password"),
        starttls=bool(smtp.get("starttls", False)),
    )


def notifier_from_config(
    config: dict,
    emails: Optional[list[str]] = None,
    session: Optional[requests.Session] = None,
) -> AutoRollNotifier:
    """Build the notifier for a roller; "$SHERIFF" expands to emails when given."""
    configs = notifier_configs_from_config(config)
    if emails is not None:
        configs = replace_sheriff_placeholder(configs, emails)
    return AutoRollNotifier(
        roller_name=config["roller_name"],
        child_name=config["child_name"],
        parent_name=config["parent_name"],
        configs=configs,
        smtp=smtp_settings_from_config(config),
        session=session,
    )
