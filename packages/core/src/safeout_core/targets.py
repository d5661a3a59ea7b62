"""Target resolution: which issue or pull request a record applies to.

Target modes (per type, from configuration):
  triggering   the issue/PR of the event that started the run (default)
  *            the record itself names the number
  <number>     a fixed issue/PR number
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from safeout_core.errors import TargetResolutionError
from safeout_core.temporary_id import TemporaryIdMap, is_temporary_id, strip_hash

ISSUE_EVENTS = ("issues", "issue_comment")
PULL_REQUEST_EVENTS = ("pull_request", "pull_request_target", "pull_request_review", "pull_request_review_comment")


@dataclass
class EventContext:
    """The subset of the triggering workflow event that target resolution needs."""

    event_name: str = ""
    repo: str = ""
    payload: dict = field(default_factory=dict)
    run_id: str = ""
    actor: str = ""
    server_url: str = "https://github.com"
    workflow: str = ""

    @property
    def is_issue_context(self) -> bool:
        return self.event_name in ISSUE_EVENTS

    @property
    def is_pull_request_context(self) -> bool:
        if self.event_name in PULL_REQUEST_EVENTS:
            return True
        # Comments on pull requests arrive as issue_comment events.
        issue = self.payload.get("issue") or {}
        return self.event_name == "issue_comment" and bool(issue.get("pull_request"))

    @property
    def issue_number(self) -> int | None:
        return (self.payload.get("issue") or {}).get("number")

    @property
    def pull_request_number(self) -> int | None:
        pull_request = self.payload.get("pull_request")
        if pull_request:
            return pull_request.get("number")
        if self.is_pull_request_context:
            return self.issue_number
        return None

    @property
    def run_url(self) -> str:
        return f"{self.server_url}/{self.repo}/actions/runs/{self.run_id}"


class TargetKind(Enum):
    ISSUE = "issue"
    PULL_REQUEST = "pull request"
    EITHER = "issue or pull request"

    @property
    def number_fields(self) -> tuple[str, ...]:
        if self is TargetKind.ISSUE:
            return ("item_number", "issue_number")
        if self is TargetKind.PULL_REQUEST:
            return ("pull_request_number",)
        return ("item_number", "issue_number", "pull_request_number")


@dataclass(frozen=True)
class ResolvedTarget:
    number: int
    is_pull_request: bool = False
    repo: str | None = None


def _looks_like_unevaluated_expression(target: str) -> bool:
    return target in ("event", "[object Object]") or "github.event" in target or "${{" in target


def _positive_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value).strip()
    if text.isdigit() and int(text) > 0:
        return int(text)
    return None


def _from_item(item: dict, item_type: str, kind: TargetKind, temporary_ids: TemporaryIdMap | None) -> ResolvedTarget:
    for field_name in kind.number_fields:
        value = item.get(field_name)
        if value is None or value == "":
            continue
        if temporary_ids is not None and isinstance(value, str) and is_temporary_id(strip_hash(value)):
            ref = temporary_ids.resolve_issue_number(value, default_repo="")
            return ResolvedTarget(number=ref.number, repo=ref.repo or None)
        number = _positive_int(value)
        if number is None:
            raise TargetResolutionError(f"Invalid {'/'.join(kind.number_fields)} specified: {value}")
        return ResolvedTarget(number=number, is_pull_request=field_name == "pull_request_number")
    raise TargetResolutionError(f'Target is "*" but no {"/".join(kind.number_fields)} specified in {item_type} item')


def _from_context(context: EventContext, kind: TargetKind) -> ResolvedTarget | None:
    if kind is not TargetKind.ISSUE and context.is_pull_request_context:
        number = context.pull_request_number
        if number is None:
            raise TargetResolutionError("Pull request context detected but no pull request found in payload")
        return ResolvedTarget(number=number, is_pull_request=True)
    if kind is not TargetKind.PULL_REQUEST and context.is_issue_context:
        number = context.issue_number
        if number is None:
            raise TargetResolutionError("Issue context detected but no issue found in payload")
        return ResolvedTarget(number=number)
    return None


def resolve_target(
    target: str | int | None,
    item: dict,
    context: EventContext,
    item_type: str,
    kind: TargetKind = TargetKind.EITHER,
    temporary_ids: TemporaryIdMap | None = None,
) -> ResolvedTarget | None:
    """Resolve the issue or pull request number ``item`` applies to.

    Returns None when the target is ``triggering`` and the run was not
    started from a matching issue/PR; callers treat that as a skip.

    Raises:
        TargetResolutionError: the target cannot be determined.
    """
    target = str(target).strip() if target not in (None, "") else "triggering"

    if target == "triggering":
        return _from_context(context, kind)

    if target == "*":
        return _from_item(item, item_type, kind, temporary_ids)

    number = _positive_int(target)
    if number is None:
        message = f"Invalid {kind.value} number in target configuration for {item_type}: {target}"
        if _looks_like_unevaluated_expression(target):
            message += (
                ". It looks like the target contains a GitHub Actions expression that didn't evaluate correctly. "
                "Use a concrete number, 'triggering' or '*'."
            )
        raise TargetResolutionError(message)
    return ResolvedTarget(number=number, is_pull_request=kind is TargetKind.PULL_REQUEST)
