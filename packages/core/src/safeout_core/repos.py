"""Target repository resolution and the cross-repository allow-list.

Allow-list patterns:
  owner/repo       exact slug
  *                any repository
  owner/*          any repository under ``owner``
  */repo           ``repo`` under any owner
  owner/prefix-*   any repository under ``owner`` whose name starts with ``prefix-``

Slugs are compared case-sensitively.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from safeout_core.errors import InvalidRepoError, RepoNotAllowedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoTarget:
    slug: str
    owner: str
    name: str


def parse_allowed_repos(value) -> set[str]:
    """Accept a comma-separated string or a list and return the set of non-empty patterns."""
    if not value:
        return set()
    if isinstance(value, str):
        parts = value.split(",")
    else:
        parts = [str(v) for v in value]
    return {part.strip() for part in parts if part.strip()}


def parse_repo_slug(slug: str) -> tuple[str, str] | None:
    """Split ``owner/repo`` into its parts; None unless there is exactly one slash and both parts are set."""
    if not slug or not isinstance(slug, str):
        return None
    parts = slug.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


def _part_matches(pattern: str, value: str) -> bool:
    if pattern == "*" or pattern == value:
        return True
    return pattern.endswith("*") and value.startswith(pattern[:-1])


def is_repo_allowed(slug: str, allowed: set[str]) -> bool:
    """Return True if ``slug`` matches any pattern in ``allowed``."""
    if not allowed:
        return False
    if "*" in allowed or slug in allowed:
        return True

    parts = parse_repo_slug(slug)
    if parts is None:
        return False
    owner, name = parts
    for pattern in allowed:
        pattern_parts = pattern.split("/")
        if len(pattern_parts) != 2:
            continue
        owner_pattern, name_pattern = pattern_parts
        if _part_matches(owner_pattern, owner) and _part_matches(name_pattern, name):
            return True
    return False


def qualify_repo(repo: str, default_repo: str) -> str:
    """Prefix a bare repository name with the default repository's owner."""
    repo = repo.strip()
    if "/" in repo:
        return repo
    default_parts = parse_repo_slug(default_repo)
    if default_parts is None:
        return repo
    return f"{default_parts[0]}/{repo}"


def validate_repo(repo: str | None, default_repo: str, allowed: set[str]) -> str:
    """Return the qualified slug for ``repo`` if it may be targeted.

    The default repository is always allowed. Bare names are qualified with
    the default repository's owner before matching.

    Raises:
        RepoNotAllowedError: naming the default repository and every allowed pattern.
    """
    if repo is None or not str(repo).strip():
        return default_repo

    slug = qualify_repo(str(repo), default_repo)
    if slug == default_repo or is_repo_allowed(slug, allowed):
        return slug

    listed = ", ".join([default_repo, *sorted(allowed)])
    raise RepoNotAllowedError(
        f"Repository '{slug}' is not in the allowed-repos list. Allowed repositories: {listed}"
    )


class RepoResolver:
    """Resolves and authorizes the repository a record targets."""

    def __init__(self, default_repo: str, allowed_repos: set[str] | None = None):
        self.default_repo = default_repo
        self.allowed_repos = set(allowed_repos or ())

    def resolve(self, item: dict, item_type: str = "record") -> RepoTarget:
        """Return the validated target for ``item``.

        Raises:
            RepoNotAllowedError: the slug is outside the allow-list.
            InvalidRepoError: the slug is not of the form ``owner/repo``.
        """
        raw = item.get("repo")
        if raw is not None and not isinstance(raw, str):
            raise InvalidRepoError(f"{item_type}: 'repo' must be a string in the format 'owner/repo'")

        slug = validate_repo(raw, self.default_repo, self.allowed_repos)
        parts = parse_repo_slug(slug)
        if parts is None:
            raise InvalidRepoError(f"Invalid repository format '{slug}'. Expected 'owner/repo'.")
        if slug != self.default_repo:
            logger.debug("%s targets repository %s", item_type, slug)
        return RepoTarget(slug=slug, owner=parts[0], name=parts[1])
