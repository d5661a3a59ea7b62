"""Mention allow-list resolution.

The allow-list decides which ``@user`` mentions survive sanitization. It is
seeded from configuration and from the participants of the triggering event,
then grows during ingestion: before a record that replies on an existing
issue is validated, the author of that issue is looked up and allowed, so an
agent can address the person it is replying to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from github import GithubException

from safeout_core.errors import ConfigError, SafeOutputError
from safeout_core.repos import RepoResolver
from safeout_core.sanitize import ALLOW_ALL_MENTIONS
from safeout_core.schema import TypeSchema
from safeout_core.targets import EventContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_MENTIONS = 50

# Record types that reply on an existing issue, and the field carrying its number.
ISSUE_NUMBER_FIELDS = {
    "add_comment": "item_number",
    "close_issue": "issue_number",
    "update_issue": "issue_number",
}

LookupIssueAuthor = Callable[[str, int], str | None]


def is_bot(username: str) -> bool:
    return username.lower().endswith("[bot]")


@dataclass
class MentionsConfig:
    """``enabled``: None resolves the allow-list, True allows every mention, False allows none."""

    enabled: bool | None = None
    allow_context: bool = True
    allowed: list[str] = field(default_factory=list)
    max: int = DEFAULT_MAX_MENTIONS
    strict: bool = False

    @classmethod
    def from_dict(cls, raw) -> MentionsConfig:
        if raw is None:
            return cls()
        if isinstance(raw, bool):
            return cls(enabled=raw)
        if not isinstance(raw, dict):
            raise ConfigError("mentions must be a boolean or a mapping")
        allowed = raw.get("allowed") or []
        if not isinstance(allowed, list) or not all(isinstance(name, str) for name in allowed):
            raise ConfigError("mentions.allowed must be a list of usernames")
        max_mentions = raw.get("max", DEFAULT_MAX_MENTIONS)
        if isinstance(max_mentions, bool) or not isinstance(max_mentions, int) or max_mentions < 0:
            raise ConfigError(f"mentions.max must be a non-negative integer, got {max_mentions!r}")
        enabled = raw.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            raise ConfigError("mentions.enabled must be true, false or omitted")
        return cls(
            enabled=enabled,
            allow_context=bool(raw.get("allow_context", True)),
            allowed=allowed,
            max=max_mentions,
            strict=bool(raw.get("strict", False)),
        )


def _login(user) -> str | None:
    if not isinstance(user, dict):
        return None
    if user.get("type") == "Bot":
        return None
    login = user.get("login")
    return login if isinstance(login, str) and login else None


def context_participants(context: EventContext) -> list[str]:
    """Authors and assignees of the issue, PR, comment or review that triggered the run."""
    payload = context.payload
    users: list = []
    for key in ("issue", "pull_request", "discussion"):
        entity = payload.get(key)
        if isinstance(entity, dict):
            users.append(entity.get("user"))
            users.extend(entity.get("assignees") or [])
    for key in ("comment", "review"):
        entity = payload.get(key)
        if isinstance(entity, dict):
            users.append(entity.get("user"))

    logins = [login for login in (_login(user) for user in users) if login]
    if context.event_name == "workflow_dispatch" and context.actor:
        logins.append(context.actor)
    return logins


class MentionResolver:
    """Owns the mention allow-list for one batch."""

    def __init__(
        self,
        config: MentionsConfig | None = None,
        lookup_issue_author: LookupIssueAuthor | None = None,
        repo_resolver: RepoResolver | None = None,
    ):
        self.config = config or MentionsConfig()
        self._lookup = lookup_issue_author
        self._repo_resolver = repo_resolver
        self._allowed: list[str] = []
        self._looked_up: set[tuple[str, int]] = set()
        for name in self.config.allowed:
            self.allow(name)

    @property
    def allowed(self) -> list[str]:
        if self.config.enabled is True:
            return [ALLOW_ALL_MENTIONS]
        if self.config.enabled is False:
            return []
        return list(self._allowed)

    @property
    def strict(self) -> bool:
        return self.config.strict

    def is_allowed(self, username: str) -> bool:
        allowed = {name.lower() for name in self.allowed}
        return ALLOW_ALL_MENTIONS in allowed or username.lstrip("@").lower() in allowed

    def allow(self, username: str) -> bool:
        """Add ``username`` to the allow-list. Returns False if skipped (bot, duplicate, cap reached)."""
        name = username.strip().lstrip("@")
        if not name or is_bot(name):
            return False
        if name.lower() in {existing.lower() for existing in self._allowed}:
            return False
        if len(self._allowed) >= self.config.max:
            logger.warning("Mention allow-list is full (%d); not adding @%s", self.config.max, name)
            return False
        self._allowed.append(name)
        return True

    def add_context_participants(self, context: EventContext) -> None:
        if not self.config.allow_context:
            return
        for login in context_participants(context):
            self.allow(login)

    def observe(self, item: dict, schema: TypeSchema | None = None) -> None:
        """Grow the allow-list with the author of the issue ``item`` replies on, if any.

        When ``schema`` is given, its ``target_repo`` and ``allowed_repos``
        apply to the lookup the same way they apply when the record is
        dispatched. Lookup failures are logged and leave the allow-list
        unchanged.
        """
        if self._lookup is None or self._repo_resolver is None or self.config.enabled is not None:
            return
        field_name = ISSUE_NUMBER_FIELDS.get(str(item.get("type", "")).replace("-", "_"))
        if field_name is None:
            return
        number = item.get(field_name)
        if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
            return

        repo_resolver = self._repo_resolver
        if schema is not None:
            repo_resolver = schema.repo_resolver(repo_resolver.default_repo, repo_resolver.allowed_repos)
        try:
            repo = repo_resolver.resolve(item).slug
        except SafeOutputError as exc:
            logger.debug("Skipping author lookup: %s", exc)
            return
        if (repo, number) in self._looked_up:
            return
        self._looked_up.add((repo, number))

        try:
            author = self._lookup(repo, number)
        except (GithubException, OSError) as exc:
            logger.info("Could not fetch author of %s#%d: %s", repo, number, exc)
            return
        if author and not is_bot(author) and self.allow(author):
            logger.info("Added @%s (author of %s#%d) to allowed mentions", author, repo, number)
