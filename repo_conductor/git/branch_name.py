"""Branch names for run worktrees.

Branch names are generated from a template with ``{token}`` placeholders:

    {workflow}    workflow name
    {run-id}      run id
    {phase}       phase the worktree was created for
    {issue-id}    work item the run targets, when known
    {timestamp}   unix seconds
    {date}        YYYY-MM-DD (UTC)
    {short-hash}  random 7 hex characters

Token values are slugged, and the final name is cleaned up so git accepts
it as a ref (no ``..``, no ``.lock`` suffix, no control characters...).
"""

import re
import secrets
from datetime import UTC, datetime

DEFAULT_BRANCH_TEMPLATE = "conductor/{workflow}/{run-id}"
FALLBACK_BRANCH_NAME = "conductor/branch"

_TOKEN_PATTERN = re.compile(r"\{(workflow|run-id|phase|issue-id|timestamp|short-hash|date)\}")


def _normalize_token_value(value: object | None) -> str:
    if value is None:
        return ""
    normalized = str(value).strip().lower()
    normalized = re.sub(r"[\\/]+", "-", normalized)
    normalized = re.sub(r"[\s_]+", "-", normalized)
    normalized = re.sub(r"[^a-z0-9.-]+", "-", normalized)
    normalized = re.sub(r"-{2,}", "-", normalized)
    return normalized.strip(".").strip("-")


def _sanitize_segment(segment: str) -> str:
    value = re.sub(r"[\x00-\x1f\x7f]", "-", segment)
    value = re.sub(r"[\[ ~^:\\?*]+", "-", value)
    value = re.sub(r"\.{2,}", ".", value)
    value = value.replace("@{", "-")
    value = re.sub(r"-{2,}", "-", value).strip(".").strip("-")
    while value.endswith(".lock"):
        value = value[: -len(".lock")].strip(".").strip("-")
    return value


def sanitize_branch_name(raw: str) -> str:
    """Turn an arbitrary string into a name git accepts as a branch."""
    segments = [_sanitize_segment(part) for part in re.sub(r"/+", "/", raw.replace("\\", "-")).split("/")]
    name = "/".join(segment for segment in segments if segment)
    name = re.sub(r"-+/", "/", name)
    name = re.sub(r"/-+", "/", name)

    if name.startswith("-"):
        name = f"branch-{name[1:]}"
    name = name.rstrip(".")
    return name or FALLBACK_BRANCH_NAME


def generate_branch_name(
    template: str | None,
    *,
    workflow: str,
    run_id: str,
    phase: str | None = None,
    issue_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Render a branch name template for a run.

    Example:
        >>> generate_branch_name(None, workflow="Fix Bugs", run_id="a1b2")
        'conductor/fix-bugs/a1b2'
    """
    moment = now or datetime.now(UTC)
    values = {
        "workflow": _normalize_token_value(workflow),
        "run-id": _normalize_token_value(run_id),
        "phase": _normalize_token_value(phase),
        "issue-id": _normalize_token_value(issue_id),
        "timestamp": str(int(moment.timestamp())),
        "date": moment.strftime("%Y-%m-%d"),
        "short-hash": secrets.token_hex(4)[:7],
    }
    chosen = template.strip() if template and template.strip() else DEFAULT_BRANCH_TEMPLATE
    rendered = _TOKEN_PATTERN.sub(lambda match: values[match.group(1)], chosen)
    return sanitize_branch_name(rendered)
