"""Buffered pull request review.

Inline review comments are not posted one by one. They accumulate in a
:class:`ReviewBuffer` together with optional review-level metadata (body and
event) and are submitted as a single GitHub review at the end of the batch.

The buffer binds to one pull request the first time a review context is set;
comments aimed at any other pull request are rejected from then on. Each
batch creates its own buffer with :func:`create_review_buffer`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from github import GithubException

from safeout_core.errors import ReviewBufferError

if TYPE_CHECKING:
    from safeout_core.gh.client import GitHubClient

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "COMMENT"


class ReviewState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    CONTEXT_BOUND = "context_bound"
    SUBMITTED = "submitted"


@dataclass(frozen=True)
class ReviewContext:
    repo: str
    pr_number: int
    head_sha: str | None


@dataclass(frozen=True)
class FooterContext:
    workflow_name: str
    run_url: str
    triggering_number: int | None = None


@dataclass
class ReviewResult:
    success: bool
    skipped: bool = False
    error: str | None = None
    review_id: int | None = None
    review_url: str | None = None
    pull_request_number: int | None = None
    repo: str | None = None
    event: str | None = None
    comment_count: int = 0


def build_footer(ctx: FooterContext) -> str:
    footer = f"\n\n> AI generated by [{ctx.workflow_name}]({ctx.run_url})"
    if ctx.triggering_number:
        footer += f" for #{ctx.triggering_number}"
    return footer


@dataclass
class ReviewBuffer:
    client: GitHubClient | None = None
    include_footer: bool = True
    comments: list[dict] = field(default_factory=list)
    metadata: dict | None = None
    context: ReviewContext | None = None
    footer_context: FooterContext | None = None
    submitted: bool = False

    @property
    def state(self) -> ReviewState:
        if self.submitted:
            return ReviewState.SUBMITTED
        if self.context is not None:
            return ReviewState.CONTEXT_BOUND
        if self.comments or self.metadata is not None:
            return ReviewState.ACCUMULATING
        return ReviewState.EMPTY

    def _ensure_open(self) -> None:
        if self.submitted:
            raise ReviewBufferError("Review already submitted; create a new buffer for another pull request")

    def add_comment(self, comment: dict) -> None:
        self._ensure_open()
        self.comments.append(dict(comment))
        logger.info("Buffered review comment %d on %s:%s", len(self.comments), comment.get("path"), comment.get("line"))

    def set_review_metadata(self, body: str | None, event: str | None) -> None:
        """Record the review body and event. The last call wins."""
        self._ensure_open()
        self.metadata = {"body": body or "", "event": event or DEFAULT_EVENT}

    def set_review_context(self, repo: str, pr_number: int, head_sha: str | None) -> bool:
        """Bind the buffer to a pull request.

        Returns True when this call bound the context and False when the same
        pull request was already bound.

        Raises:
            ReviewBufferError: the buffer is bound to a different pull request.
        """
        self._ensure_open()
        if self.context is None:
            self.context = ReviewContext(repo=repo, pr_number=pr_number, head_sha=head_sha)
            logger.info("Review context set to %s#%d", repo, pr_number)
            return True
        if (self.context.repo, self.context.pr_number) != (repo, pr_number):
            raise ReviewBufferError(
                "Review comments must target the same PR "
                f"(buffer is bound to {self.context.repo}#{self.context.pr_number})"
            )
        return False

    def set_footer_context(self, ctx: FooterContext) -> None:
        if self.footer_context is None:
            self.footer_context = ctx

    def set_include_footer(self, value: bool) -> None:
        self.include_footer = value
        logger.info("PR review footer %s", "enabled" if value else "disabled")

    def has_buffered_comments(self) -> bool:
        return bool(self.comments)

    def has_review_metadata(self) -> bool:
        return self.metadata is not None

    @property
    def buffered_count(self) -> int:
        return len(self.comments)

    def reset(self) -> None:
        self.comments = []
        self.metadata = None
        self.context = None
        self.footer_context = None
        self.include_footer = True
        self.submitted = False

    def _api_comments(self) -> list[dict]:
        api_comments = []
        for comment in self.comments:
            api_comment = {"path": comment["path"], "line": comment["line"], "body": comment["body"]}
            if comment.get("side"):
                api_comment["side"] = comment["side"]
            if comment.get("start_line") is not None:
                api_comment["start_line"] = comment["start_line"]
                start_side = comment.get("start_side") or comment.get("side")
                if start_side:
                    api_comment["start_side"] = start_side
            api_comments.append(api_comment)
        return api_comments

    def submit_review(self) -> ReviewResult:
        """Submit everything buffered as one review.

        Nothing buffered is a successful no-op and makes no API call.
        """
        if not self.comments and self.metadata is None:
            logger.info("No buffered review comments or review metadata to submit")
            return ReviewResult(success=True, skipped=True)
        if self.context is None:
            return ReviewResult(success=False, error="No review context available")
        if not self.context.head_sha:
            return ReviewResult(success=False, error="Pull request head SHA not available")
        if self.client is None:
            return ReviewResult(success=False, error="No GitHub client available to submit the review")

        event = self.metadata["event"] if self.metadata else DEFAULT_EVENT
        body = self.metadata["body"] if self.metadata else ""
        if self.include_footer and self.footer_context is not None:
            body += build_footer(self.footer_context)
        comments = self._api_comments()

        logger.info(
            "Submitting PR review on %s#%d: event=%s, comments=%d",
            self.context.repo,
            self.context.pr_number,
            event,
            len(comments),
        )
        try:
            review = self.client.create_review(
                self.context.repo,
                self.context.pr_number,
                commit_id=self.context.head_sha,
                event=event,
                body=body or None,
                comments=comments or None,
            )
        except GithubException as exc:
            logger.error("Failed to submit PR review: %s", exc)
            return ReviewResult(success=False, error=str(exc))

        self.submitted = True
        return ReviewResult(
            success=True,
            review_id=review.get("id"),
            review_url=review.get("url"),
            pull_request_number=self.context.pr_number,
            repo=self.context.repo,
            event=event,
            comment_count=len(comments),
        )


def create_review_buffer(client: GitHubClient | None = None, include_footer: bool = True) -> ReviewBuffer:
    """Return a new, empty buffer owned by the caller."""
    return ReviewBuffer(client=client, include_footer=include_footer)
