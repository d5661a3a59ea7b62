"""Dispatch of validated records to the privileged GitHub API.

Records are dispatched one at a time, in order. Each record resolves its
target repository and issue/PR, has temporary-ID references replaced, and
then makes its privileged call (or, in staged mode, reports what it would
have done). A failing record never stops its siblings.

Review comments are not posted here; they accumulate in the batch's
:class:`~safeout_core.review_buffer.ReviewBuffer`, which is submitted once
after the last record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from github import GithubException

from safeout_core.errors import E_API, SafeOutputError, UnsupportedTypeError
from safeout_core.repos import RepoResolver, RepoTarget
from safeout_core.review_buffer import FooterContext, ReviewBuffer, ReviewResult
from safeout_core.schema import OutputType, TypeSchema
from safeout_core.targets import EventContext, ResolvedTarget, TargetKind, resolve_target
from safeout_core.temporary_id import (
    TemporaryIdMap,
    created_temporary_id,
    extract_references,
    generate_temporary_id,
    get_or_generate_temporary_id,
)

if TYPE_CHECKING:
    from safeout_core.gh.client import GitHubClient

logger = logging.getLogger(__name__)

CREATE_ITEM_TYPES = frozenset(
    {
        OutputType.CREATE_ISSUE.value,
        OutputType.ADD_COMMENT.value,
        OutputType.CREATE_DISCUSSION.value,
        OutputType.CREATE_PULL_REQUEST.value,
        OutputType.CREATE_PROJECT.value,
    }
)

# Types that mint a temporary ID for the entity they create.
_MINTING_TYPES = (OutputType.CREATE_ISSUE.value, OutputType.CREATE_PROJECT.value)

PatchCapability = Callable[[dict, RepoTarget], str]


@dataclass
class DispatchResult:
    type: str
    success: bool
    skipped: bool = False
    staged: bool = False
    error: str | None = None
    url: str | None = None
    number: int | None = None
    repo: str | None = None
    temporary_id: str | None = None
    details: dict = field(default_factory=dict)


@dataclass
class CreatedItem:
    """An entity that now exists in GitHub because of this batch.

    Decoupled from safeout_store so the core has no knowledge of how the
    audit manifest is persisted.
    """

    type: str
    url: str
    number: int | None = None
    repo: str | None = None
    temporary_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DispatchSummary:
    results: list[DispatchResult] = field(default_factory=list)
    review: ReviewResult | None = None
    temporary_ids: dict = field(default_factory=dict)

    @property
    def failed(self) -> list[DispatchResult]:
        failed = [r for r in self.results if not r.success]
        if self.review is not None and not self.review.success:
            failed.append(DispatchResult(type="submit_pull_request_review", success=False, error=self.review.error))
        return failed

    def to_dict(self) -> dict:
        return {
            "results": [asdict(r) for r in self.results],
            "review": asdict(self.review) if self.review else None,
            "temporary_ids": self.temporary_ids,
        }


@dataclass
class DispatchContext:
    """Everything the handlers of one batch share."""

    client: GitHubClient | None
    schemas: dict[str, TypeSchema]
    event: EventContext
    default_repo: str
    allowed_repos: set[str] = field(default_factory=set)
    staged: bool = False
    temporary_ids: TemporaryIdMap = field(default_factory=TemporaryIdMap)
    review_buffer: ReviewBuffer | None = None
    push_patch: PatchCapability | None = None
    on_created: Callable[[CreatedItem], None] | None = None
    workflow_name: str = ""

    def schema_for(self, item_type: str) -> TypeSchema:
        return self.schemas.get(item_type) or TypeSchema(name=item_type)

    def repo_resolver(self, schema: TypeSchema) -> RepoResolver:
        return schema.repo_resolver(self.default_repo, self.allowed_repos)

    def require_client(self) -> GitHubClient:
        if self.client is None:
            raise SafeOutputError("No GitHub client configured", code=E_API)
        return self.client


def extract_created_item(item_type: str, result: DispatchResult | None) -> CreatedItem | None:
    """Return the manifest-worthy entity ``result`` created, if any.

    Only create types count, and only real (non-staged) results with a URL.
    """
    if result is None or item_type not in CREATE_ITEM_TYPES:
        return None
    if not result.success or result.staged or not result.url:
        return None
    return CreatedItem(
        type=item_type,
        url=result.url,
        number=result.number,
        repo=result.repo,
        temporary_id=result.temporary_id,
    )


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


def _skipped(item_type: str, reason: str) -> DispatchResult:
    logger.info("Skipping %s: %s", item_type, reason)
    return DispatchResult(type=item_type, success=True, skipped=True, details={"reason": reason})


def _staged(item_type: str, **preview) -> DispatchResult:
    logger.info("Staged mode: would %s %s", item_type, preview)
    return DispatchResult(type=item_type, success=True, staged=True, details=preview)


def _target(item: dict, item_type: str, schema: TypeSchema, ctx: DispatchContext, kind: TargetKind) -> ResolvedTarget | None:
    return resolve_target(schema.target, item, ctx.event, item_type, kind, ctx.temporary_ids)


def _handle_create_issue(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CREATE_ISSUE.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    temporary_id = get_or_generate_temporary_id(item, "issue")
    body = ctx.temporary_ids.replace_references(item["body"], repo.slug)
    labels = list(dict.fromkeys([*schema.options.get("labels", []), *(item.get("labels") or [])]))
    title = f"{schema.options.get('title_prefix', '')}{item['title']}"

    if ctx.staged:
        return _staged(item_type, repo=repo.slug, title=title, labels=labels, temporary_id=temporary_id)

    created = ctx.require_client().create_issue(repo.slug, title, body, labels=labels, assignees=item.get("assignees"))
    ctx.temporary_ids.register_issue(temporary_id, repo.slug, created["number"])

    # The issue exists now; a failed parent link is reported, not raised.
    details = {}
    if item.get("parent") is not None:
        try:
            parent = ctx.temporary_ids.resolve_issue_number(item["parent"], repo.slug)
            ctx.require_client().add_sub_issue(parent.repo, parent.number, created["number"])
            details["parent"] = parent.number
        except (SafeOutputError, GithubException) as exc:
            logger.warning("Created %s#%d but could not link it to parent %s: %s", repo.slug, created["number"], item["parent"], exc)
            details["parent_error"] = str(exc)

    return DispatchResult(
        type=item_type,
        success=True,
        url=created["url"],
        number=created["number"],
        repo=repo.slug,
        temporary_id=temporary_id,
        details=details,
    )


def _handle_add_comment(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.ADD_COMMENT.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    target = _target(item, item_type, schema, ctx, TargetKind.EITHER)
    if target is None:
        return _skipped(item_type, 'target is "triggering" but not running in an issue or pull request context')

    slug = target.repo or repo.slug
    body = ctx.temporary_ids.replace_references(item["body"], slug)
    if ctx.staged:
        return _staged(item_type, repo=slug, number=target.number, body_length=len(body))

    created = ctx.require_client().create_comment(slug, target.number, body)
    return DispatchResult(type=item_type, success=True, url=created["url"], number=target.number, repo=slug)


def _handle_add_labels(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.ADD_LABELS.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    target = _target(item, item_type, schema, ctx, TargetKind.EITHER)
    if target is None:
        return _skipped(item_type, 'target is "triggering" but not running in an issue or pull request context')
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, number=target.number, labels=item["labels"])

    ctx.require_client().add_labels(repo.slug, target.number, item["labels"])
    return DispatchResult(type=item_type, success=True, number=target.number, repo=repo.slug, details={"labels": item["labels"]})


def _handle_update_issue(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.UPDATE_ISSUE.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    target = _target(item, item_type, schema, ctx, TargetKind.ISSUE)
    if target is None:
        return _skipped(item_type, 'target is "triggering" but not running in an issue context')

    body = item.get("body")
    if body is not None:
        body = ctx.temporary_ids.replace_references(body, repo.slug)
    changes = {"title": item.get("title"), "body": body, "state": item.get("status")}
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, number=target.number, fields=sorted(k for k, v in changes.items() if v is not None))

    updated = ctx.require_client().update_issue(repo.slug, target.number, **changes)
    return DispatchResult(type=item_type, success=True, url=updated["url"], number=target.number, repo=repo.slug)


def _handle_close_issue(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CLOSE_ISSUE.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    target = _target(item, item_type, schema, ctx, TargetKind.ISSUE)
    if target is None:
        return _skipped(item_type, 'target is "triggering" but not running in an issue context')
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, number=target.number)

    body = ctx.temporary_ids.replace_references(item["body"], repo.slug)
    closed = ctx.require_client().close_issue(repo.slug, target.number, body)
    return DispatchResult(type=item_type, success=True, url=closed["url"], number=target.number, repo=repo.slug)


def _handle_create_pull_request(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CREATE_PULL_REQUEST.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    body = ctx.temporary_ids.replace_references(item["body"], repo.slug)
    draft = item.get("draft", schema.options.get("draft", False))
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, title=item["title"], branch=item["branch"], draft=draft)
    if ctx.push_patch is None:
        raise SafeOutputError("No patch capability configured; cannot push the pull request branch")

    head = ctx.push_patch(item, repo)
    client = ctx.require_client()
    created = client.create_pull_request(repo.slug, item["title"], body, head=head, base=schema.options.get("base"), draft=draft)
    labels = list(dict.fromkeys([*schema.options.get("labels", []), *(item.get("labels") or [])]))
    if labels:
        client.add_labels(repo.slug, created["number"], labels)
    return DispatchResult(type=item_type, success=True, url=created["url"], number=created["number"], repo=repo.slug)


def _triggering_head_sha(ctx: DispatchContext, repo: str, number: int) -> str | None:
    pull_request = ctx.event.payload.get("pull_request") or {}
    if repo == ctx.event.repo and pull_request.get("number") == number:
        return (pull_request.get("head") or {}).get("sha")
    return None


def _bind_review(buffer: ReviewBuffer, ctx: DispatchContext, repo: str, number: int) -> None:
    if buffer.context is None:
        head_sha = _triggering_head_sha(ctx, repo, number)
        if head_sha is None and ctx.client is not None:
            head_sha = ctx.client.get_pull_head_sha(repo, number)
        buffer.set_review_context(repo, number, head_sha)
    else:
        buffer.set_review_context(repo, number, buffer.context.head_sha)
    buffer.set_footer_context(
        FooterContext(
            workflow_name=ctx.workflow_name or ctx.event.workflow or "workflow",
            run_url=ctx.event.run_url,
            triggering_number=ctx.event.pull_request_number or ctx.event.issue_number,
        )
    )


def _require_buffer(ctx: DispatchContext) -> ReviewBuffer:
    if ctx.review_buffer is None:
        raise SafeOutputError("No review buffer available for pull request review output")
    return ctx.review_buffer


def _handle_review_comment(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CREATE_PULL_REQUEST_REVIEW_COMMENT.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    target = _target(item, item_type, schema, ctx, TargetKind.PULL_REQUEST)
    if target is None:
        return _skipped(item_type, 'target is "triggering" but not running in a pull request context')
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, number=target.number, path=item["path"], line=item["line"])

    buffer = _require_buffer(ctx)
    _bind_review(buffer, ctx, repo.slug, target.number)
    if not schema.footer:
        buffer.set_include_footer(False)
    comment = {key: item[key] for key in ("path", "line", "body", "start_line", "side", "start_side") if item.get(key) is not None}
    buffer.add_comment(comment)
    return DispatchResult(
        type=item_type,
        success=True,
        number=target.number,
        repo=repo.slug,
        details={"buffered": True, "buffered_count": buffer.buffered_count},
    )


def _handle_submit_review(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.SUBMIT_PULL_REQUEST_REVIEW.value
    event = item.get("event") or "COMMENT"
    if ctx.staged:
        return _staged(item_type, event=event)

    buffer = _require_buffer(ctx)
    if buffer.context is None:
        target = _target(item, item_type, schema, ctx, TargetKind.PULL_REQUEST)
        if target is None:
            return _skipped(item_type, 'target is "triggering" but not running in a pull request context')
        repo = ctx.repo_resolver(schema).resolve(item, item_type)
        _bind_review(buffer, ctx, repo.slug, target.number)

    buffer.set_review_metadata(item.get("body"), event)
    if not schema.footer:
        buffer.set_include_footer(False)
    return DispatchResult(type=item_type, success=True, details={"event": event, "buffered": True})


def _handle_link_sub_issue(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.LINK_SUB_ISSUE.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    parent = ctx.temporary_ids.resolve_issue_number(item["parent_issue_number"], repo.slug)
    sub = ctx.temporary_ids.resolve_issue_number(item["sub_issue_number"], repo.slug)
    if parent.repo != sub.repo:
        raise SafeOutputError(f"Parent ({parent.repo}#{parent.number}) and sub-issue ({sub.repo}#{sub.number}) must be in the same repository")
    if ctx.staged:
        return _staged(item_type, repo=parent.repo, parent=parent.number, sub_issue=sub.number)

    linked = ctx.require_client().add_sub_issue(parent.repo, parent.number, sub.number)
    return DispatchResult(type=item_type, success=True, url=linked["url"], number=parent.number, repo=parent.repo, details={"sub_issue_number": sub.number})


def _handle_update_release(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.UPDATE_RELEASE.value
    repo = ctx.repo_resolver(schema).resolve(item, item_type)
    if ctx.staged:
        return _staged(item_type, repo=repo.slug, tag=item.get("tag"), operation=item["operation"])

    updated = ctx.require_client().update_release(repo.slug, item["body"], operation=item["operation"], tag=item.get("tag"))
    return DispatchResult(type=item_type, success=True, url=updated["url"], repo=repo.slug, details={"tag": updated["tag"]})


def _handle_create_project(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CREATE_PROJECT.value
    temporary_id = get_or_generate_temporary_id(item, "project")
    default_owner = ctx.default_repo.split("/", 1)[0]
    owner = item.get("owner") or schema.options.get("target_owner") or default_owner
    owner_type = item.get("owner_type") or schema.options.get("owner_type") or "org"
    title = item.get("title") or f"{schema.options.get('title_prefix', '')}{ctx.workflow_name or 'Agent'} project"
    if ctx.staged:
        return _staged(item_type, owner=owner, owner_type=owner_type, title=title, temporary_id=temporary_id)

    client = ctx.require_client()
    project = client.create_project(owner, owner_type, title)
    ctx.temporary_ids.register_project(temporary_id, project["url"])

    details = {}
    if item.get("item_url"):
        try:
            item_url = ctx.temporary_ids.resolve_issue_url(item["item_url"], ctx.event.server_url)
            client.add_project_item(project["url"], item_url)
            details["item_url"] = item_url
        except (SafeOutputError, GithubException) as exc:
            logger.warning("Created project %s but could not add %s to it: %s", project["url"], item["item_url"], exc)
            details["item_error"] = str(exc)
    return DispatchResult(
        type=item_type,
        success=True,
        url=project["url"],
        number=project["number"],
        temporary_id=temporary_id,
        details=details,
    )


def _handle_project_status_update(item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    item_type = OutputType.CREATE_PROJECT_STATUS_UPDATE.value
    project_url = ctx.temporary_ids.resolve_project_url(item["project"])
    body = ctx.temporary_ids.replace_references(item["body"])
    if ctx.staged:
        return _staged(item_type, project=project_url, status=item.get("status"))

    ctx.require_client().create_project_status_update(
        project_url,
        body,
        status=item.get("status"),
        start_date=item.get("start_date"),
        target_date=item.get("target_date"),
    )
    return DispatchResult(type=item_type, success=True, url=project_url, details={"project": project_url})


def _handle_report(item: dict, item_type: str) -> DispatchResult:
    if item_type == OutputType.MISSING_TOOL.value:
        logger.warning("Agent reported missing tool %r: %s", item.get("tool"), item.get("reason"))
        details = {key: item.get(key) for key in ("tool", "reason", "alternatives")}
    else:
        logger.info("No-op: %s", item.get("message"))
        details = {"message": item.get("message")}
    return DispatchResult(type=item_type, success=True, details=details)


def _dispatch_one(output_type: OutputType | None, item: dict, schema: TypeSchema, ctx: DispatchContext) -> DispatchResult:
    if output_type is OutputType.CREATE_ISSUE:
        return _handle_create_issue(item, schema, ctx)
    if output_type is OutputType.ADD_COMMENT:
        return _handle_add_comment(item, schema, ctx)
    if output_type is OutputType.ADD_LABELS:
        return _handle_add_labels(item, schema, ctx)
    if output_type is OutputType.UPDATE_ISSUE:
        return _handle_update_issue(item, schema, ctx)
    if output_type is OutputType.CLOSE_ISSUE:
        return _handle_close_issue(item, schema, ctx)
    if output_type is OutputType.CREATE_PULL_REQUEST:
        return _handle_create_pull_request(item, schema, ctx)
    if output_type is OutputType.CREATE_PULL_REQUEST_REVIEW_COMMENT:
        return _handle_review_comment(item, schema, ctx)
    if output_type is OutputType.SUBMIT_PULL_REQUEST_REVIEW:
        return _handle_submit_review(item, schema, ctx)
    if output_type is OutputType.LINK_SUB_ISSUE:
        return _handle_link_sub_issue(item, schema, ctx)
    if output_type is OutputType.UPDATE_RELEASE:
        return _handle_update_release(item, schema, ctx)
    if output_type is OutputType.CREATE_PROJECT:
        return _handle_create_project(item, schema, ctx)
    if output_type is OutputType.CREATE_PROJECT_STATUS_UPDATE:
        return _handle_project_status_update(item, schema, ctx)
    if output_type in (OutputType.MISSING_TOOL, OutputType.NOOP):
        return _handle_report(item, output_type.value)
    raise UnsupportedTypeError(f"No handler loaded for type '{item['type']}'")


def _api_error_message(exc: GithubException) -> str:
    data = exc.data if isinstance(exc.data, dict) else {}
    return f"{E_API}: {data.get('message') or exc} (status {exc.status})"


def dispatch_item(item: dict, ctx: DispatchContext) -> DispatchResult:
    """Dispatch one record. Per-record failures are returned, never raised."""
    item_type = item["type"]
    try:
        result = _dispatch_one(OutputType.lookup(item_type), item, ctx.schema_for(item_type), ctx)
    except SafeOutputError as exc:
        logger.warning("%s failed: %s", item_type, exc)
        result = DispatchResult(type=item_type, success=False, error=str(exc))
    except GithubException as exc:
        logger.error("%s failed: GitHub API error %s", item_type, exc.status)
        result = DispatchResult(type=item_type, success=False, error=_api_error_message(exc))

    if ctx.on_created is not None:
        created = extract_created_item(item_type, result)
        if created is not None:
            ctx.on_created(created)
    return result


def _mint_temporary_ids(items: list[dict]) -> list[dict]:
    minted = []
    for item in items:
        item = dict(item)
        if item.get("type") in _MINTING_TYPES and item.get("temporary_id") is None:
            item["temporary_id"] = generate_temporary_id()
        minted.append(item)
    return minted


def dispatch_items(items: list[dict], ctx: DispatchContext) -> DispatchSummary:
    """Dispatch every record, then submit the buffered review.

    A record that refers to a temporary ID minted by a later record is
    deferred. Deferred records are retried pass after pass, in their original
    order, for as long as each pass unblocks at least one of them. Whatever
    is still blocked after that (a reference cycle) is dispatched as-is: an
    unresolved target fails the record, unresolved body text is left as written.

    Raises:
        ManifestError: the created-item callback could not record an entity.
    """
    items = _mint_temporary_ids(items)
    pending = {tid for tid in (created_temporary_id(item) for item in items) if tid}

    def blocking_refs(item: dict) -> set[str]:
        return {ref for ref in extract_references(item) if ref in pending and ref not in ctx.temporary_ids}

    results: list[DispatchResult | None] = [None] * len(items)
    deferred: list[int] = []
    for index, item in enumerate(items):
        blocking = blocking_refs(item)
        if blocking:
            logger.info("Deferring %s until %s is created", item["type"], ", ".join(sorted(blocking)))
            deferred.append(index)
            continue
        results[index] = dispatch_item(item, ctx)
        pending.discard(created_temporary_id(item))

    while deferred:
        still_blocked: list[int] = []
        for index in deferred:
            if blocking_refs(items[index]):
                still_blocked.append(index)
                continue
            results[index] = dispatch_item(items[index], ctx)
            pending.discard(created_temporary_id(items[index]))
        if len(still_blocked) == len(deferred):
            logger.warning("Unresolvable temporary ID references in %d record(s)", len(still_blocked))
            for index in still_blocked:
                results[index] = dispatch_item(items[index], ctx)
            break
        deferred = still_blocked

    summary = DispatchSummary(results=[r for r in results if r is not None])
    if ctx.review_buffer is not None and not ctx.staged:
        summary.review = ctx.review_buffer.submit_review()
    summary.temporary_ids = ctx.temporary_ids.to_dict()
    return summary
