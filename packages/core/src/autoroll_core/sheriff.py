"""Current-sheriff lookup.

``sheriff`` entries in the config are either email addresses or URLs that
return ``{"emails": [...]}`` (a rotation service). If nothing resolves, the
``sheriff_backup`` list is used so rolls always have a reviewer.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


def _is_url(entry: str) -> bool:
    return entry.startswith("http://") or entry.startswith("https://")


def _fetch_rotation(session: requests.Session, url: str, timeout: float) -> list[str]:
    resp = session.get(url, timeout=timeout)
    resp.raise_for_status()
    emails = resp.json().get("emails")
    if not isinstance(emails, list):
        raise ValueError(f"{url} returned no 'emails' list")
    return [e for e in emails if isinstance(e, str) and e]


def resolve_emails(entries: list[str], session: requests.Session, timeout: float = 10) -> list[str]:
    emails: list[str] = []
    for entry in entries:
        found = _fetch_rotation(session, entry, timeout) if _is_url(entry) else [entry]
        for e in found:
            if e not in emails:
                emails.append(e)
    return emails


def get_sheriff(
    sheriff: list[str],
    backup: list[str],
    session: Optional[requests.Session] = None,
    timeout: float = 10,
) -> list[str]:
    """Return the current sheriff emails, falling back to the backup list."""
    session = session or requests.Session()
    try:
        emails = resolve_emails(sheriff, session, timeout)
    except (requests.RequestException, ValueError) as e:
        logger.warning("Failed to resolve the sheriff (%s); using the backup list.", e)
        emails = []
    if emails:
        return emails
    return resolve_emails([b for b in backup if not _is_url(b)], session, timeout)
