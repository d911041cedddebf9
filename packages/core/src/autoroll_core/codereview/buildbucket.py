from __future__ import annotations

import json
import logging
from urllib.parse import urlparse

import requests

from autoroll_core.errors import ReviewSystemError
from autoroll_store.models import (
    TRYBOT_CATEGORY_CQ,
    TRYBOT_RESULT_FAILURE,
    TRYBOT_RESULT_SUCCESS,
    TRYBOT_STATUS_COMPLETED,
    TRYBOT_STATUS_SCHEDULED,
    TRYBOT_STATUS_STARTED,
    TryResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BUILDBUCKET_URL = "https://cr-buildbucket.appspot.com"
BUILD_URL_TEMPLATE = "https://ci.chromium.org/b/{id}"
_SEARCH_PATH = "/prpc/buildbucket.v2.Builds/SearchBuilds"
_XSSI_PREFIX = ")]}'"

_STATUS_MAP = {
    "SCHEDULED": (TRYBOT_STATUS_SCHEDULED, ""),
    "STARTED": (TRYBOT_STATUS_STARTED, ""),
    "SUCCESS": (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_SUCCESS),
    "FAILURE": (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE),
    "INFRA_FAILURE": (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE),
    "CANCELED": (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE),
}


def try_result_from_build(build: dict) -> TryResult | None:
    """Convert one Buildbucket build to a TryResult; None for non-CQ builds."""
    tags = {t.get("key"): t.get("value") for t in build.get("tags", [])}
    if tags.get("user_agent") != TRYBOT_CATEGORY_CQ:
        return None
    status = build.get("status", "SCHEDULED")
    if status not in _STATUS_MAP:
        raise ReviewSystemError(f"Unknown Buildbucket status {status!r} for build {build.get('id')}")
    trybot_status, result = _STATUS_MAP[status]
    return TryResult(
        builder=(build.get("builder") or {}).get("builder", ""),
        category=TRYBOT_CATEGORY_CQ,
        status=trybot_status,
        result=result,
        url=BUILD_URL_TEMPLATE.format(id=build.get("id", "")),
        created=build.get("createTime", ""),
    )


def try_results_from_builds(builds: list[dict]) -> list[TryResult]:
    """Keep the newest CQ result per builder, sorted by builder name."""
    latest: dict[str, TryResult] = {}
    for build in builds:
        result = try_result_from_build(build)
        if result is None:
            continue
        prev = latest.get(result.builder)
        if prev is None or result.created > prev.created:
            latest[result.builder] = result
    return [latest[name] for name in sorted(latest)]


class BuildbucketClient:
    def __init__(self, url: str = DEFAULT_BUILDBUCKET_URL, timeout: int = 60, session: requests.Session | None = None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def search_builds(self, gerrit_host: str, issue: int, patchset: int) -> list[dict]:
        body = {
            "predicate": {"gerritChanges": [{"host": gerrit_host, "change": issue, "patchset": patchset}]},
            "pageSize": 1000,
        }
        try:
            response = self.session.post(
                self.url + _SEARCH_PATH,
                json=body,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ReviewSystemError(f"Buildbucket search for {issue}/{patchset} failed: {e}") from e
        if response.status_code != 200:
            raise ReviewSystemError(
                f"Buildbucket search for {issue}/{patchset} returned {response.status_code}",
                status_code=response.status_code,
            )
        text = response.text
        if text.startswith(_XSSI_PREFIX):
            text = text[len(_XSSI_PREFIX) :]
        try:
            return json.loads(text).get("builds", [])
        except ValueError as e:
            raise ReviewSystemError(f"Mal-formed Buildbucket response: {e}") from e

    def get_trybot_results(self, gerrit_url: str, issue: int, patchset: int) -> list[TryResult]:
        host = urlparse(gerrit_url).hostname or gerrit_url
        return try_results_from_builds(self.search_builds(host, issue, patchset))
