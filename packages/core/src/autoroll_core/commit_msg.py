"""Roll commit message rendering.

Templates are Jinja2 with StrictUndefined, so a typo in a custom template
fails the upload instead of silently producing an empty field. The same
inputs always render the same message: revisions keep the order the repo
manager gave them and transitive dependencies are sorted by path.
"""

from __future__ import annotations

from dataclasses import dataclass

from jinja2 import Environment, StrictUndefined

from autoroll_core.revision import Revision

DEFAULT_TEMPLATE = """\
Roll {{ child_name }} from {{ rolling_from }} to {{ rolling_to }} \
({{ revisions|length }} revision{{ "" if revisions|length == 1 else "s" }})

{% if child_repo %}
{{ child_repo }}/compare/{{ rolling_from.id }}...{{ rolling_to.id }}

{% endif %}
{% for rev in revisions %}
{{ rev.timestamp[:10] }} {{ rev.author }} {{ rev.description }}
{% endfor %}
{% if transitive_deps %}

Also rolling transitive DEPS:
{% for dep in transitive_deps %}
  {{ dep.path }} {{ dep.rolling_from }}..{{ dep.rolling_to }}
{% endfor %}
{% endif %}

If this roll has caused a breakage, revert this CL and stop the roller
using the controls here:
{{ server_url }}
Please CC {{ reviewers|join(",") }} on the revert to ensure that a human
is aware of the problem.

To report a problem with the AutoRoller itself, please file a bug:
https://bugs.chromium.org/p/skia/issues/entry?template=Autoroller+Bug

{% if cq_extra_trybots %}
Cq-Include-Trybots: {{ cq_extra_trybots|join(";") }}
{% endif %}
Tbr: {{ reviewers|join(",") }}
"""

_env = Environment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
    autoescape=False,
)


@dataclass(frozen=True)
class TransitiveDep:
    path: str
    rolling_from: str
    rolling_to: str


def transitive_deps(rolling_from: Revision, rolling_to: Revision) -> list[TransitiveDep]:
    """Dependencies of the child whose pinned revision changes in this roll."""
    deps = []
    for path in sorted(rolling_to.dependencies):
        old = rolling_from.dependencies.get(path, "")
        new = rolling_to.dependencies[path]
        if old != new:
            deps.append(TransitiveDep(path=path, rolling_from=old[:12], rolling_to=new[:12]))
    return deps


def build_commit_msg(
    *,
    child_name: str,
    parent_name: str,
    rolling_from: Revision,
    rolling_to: Revision,
    revisions: list[Revision],
    reviewers: list[str],
    server_url: str,
    cq_extra_trybots: list[str] | None = None,
    child_repo: str = "",
    template: str | None = None,
) -> str:
    return _env.from_string(template or DEFAULT_TEMPLATE).render(
        child_name=child_name,
        parent_name=parent_name,
        rolling_from=rolling_from,
        rolling_to=rolling_to,
        revisions=revisions,
        reviewers=list(reviewers),
        server_url=server_url,
        transitive_deps=transitive_deps(rolling_from, rolling_to),
        cq_extra_trybots=list(cq_extra_trybots or []),
        child_repo=child_repo,
    )


def split_commit_msg(msg: str, max_body_lines: int = 50) -> tuple[str, str]:
    """Split into (title, body); the body is truncated for the GitHub API."""
    lines = msg.split("\n")
    body = lines[1:]
    if len(lines) > max_body_lines:
        body = lines[1:max_body_lines] + ["..."]
    return lines[0], "\n".join(body).strip("\n")
