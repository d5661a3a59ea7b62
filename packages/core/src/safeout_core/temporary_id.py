"""Temporary IDs: placeholders for entities created earlier in the same batch.

A record that creates something (an issue, a project) may carry a
``temporary_id`` such as ``aw_abc123``. Later records refer to it as
``#aw_abc123`` in text or in number fields; once the creating record has been
dispatched, the reference resolves to the real issue number or project URL.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass

from safeout_core.errors import TemporaryIdError

logger = logging.getLogger(__name__)

TEMPORARY_ID_RE = re.compile(r"#(aw_[A-Za-z0-9]{3,8})\b", re.IGNORECASE)
_BARE_TEMPORARY_ID_RE = re.compile(r"^aw_[A-Za-z0-9]{3,8}$", re.IGNORECASE)
_ISSUE_URL_TEMPORARY_ID_RE = re.compile(r"issues/#?(aw_[A-Za-z0-9]{3,8})\s*$", re.IGNORECASE)

FORMAT_HINT = "Temporary IDs must be in format 'aw_' followed by 3 to 8 alphanumeric characters (A-Za-z0-9). Example: 'aw_abc' or 'aw_Test123'"

TEXT_FIELDS = ("body", "title", "description")
NUMBER_FIELDS = (
    "item_number",
    "issue_number",
    "parent",
    "parent_issue_number",
    "sub_issue_number",
    "pull_request_number",
)
URL_FIELDS = ("item_url", "project")

_ALPHABET = string.ascii_lowercase + string.digits


def generate_temporary_id() -> str:
    return "aw_" + "".join(secrets.choice(_ALPHABET) for _ in range(8))


def is_temporary_id(value) -> bool:
    return isinstance(value, str) and bool(_BARE_TEMPORARY_ID_RE.match(value))


def strip_hash(value) -> str:
    text = str(value).strip()
    return text[1:].strip() if text.startswith("#") else text


def normalize_temporary_id(value: str) -> str:
    return strip_hash(value).lower()


def get_or_generate_temporary_id(item: dict, entity: str = "item") -> str:
    """Return the normalized ``temporary_id`` of ``item``, minting one when absent.

    Raises:
        TemporaryIdError: the supplied value is not a valid temporary ID.
    """
    raw = item.get("temporary_id")
    if raw is None:
        return generate_temporary_id()
    if not isinstance(raw, str):
        raise TemporaryIdError(f"{entity} temporary_id must be a string (got {type(raw).__name__})")
    candidate = strip_hash(raw)
    if not is_temporary_id(candidate):
        raise TemporaryIdError(f"Invalid temporary_id format: '{raw}'. {FORMAT_HINT}")
    return candidate.lower()


@dataclass(frozen=True)
class TemporaryIdEntry:
    repo: str | None = None
    number: int | None = None
    project_url: str | None = None


@dataclass(frozen=True)
class IssueRef:
    repo: str
    number: int
    was_temporary: bool = False


class TemporaryIdMap:
    """Write-once map from temporary ID to the entity it was minted for."""

    def __init__(self):
        self._entries: dict[str, TemporaryIdEntry] = {}

    def __contains__(self, temp_id: str) -> bool:
        return normalize_temporary_id(temp_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, temp_id: str) -> TemporaryIdEntry | None:
        return self._entries.get(normalize_temporary_id(temp_id))

    def _register(self, temp_id: str, entry: TemporaryIdEntry) -> None:
        key = normalize_temporary_id(temp_id)
        existing = self._entries.get(key)
        if existing is not None and existing != entry:
            raise TemporaryIdError(f"Temporary ID '{key}' is already mapped and cannot be reassigned")
        self._entries[key] = entry
        logger.debug("temporary id %s -> %s", key, entry)

    def register_issue(self, temp_id: str, repo: str, number: int) -> None:
        self._register(temp_id, TemporaryIdEntry(repo=repo, number=number))

    def register_project(self, temp_id: str, project_url: str) -> None:
        self._register(temp_id, TemporaryIdEntry(project_url=project_url))

    def resolve_issue_number(self, value, default_repo: str) -> IssueRef:
        """Resolve a number field that may hold an issue number or a temporary ID.

        Raises:
            TemporaryIdError: malformed or not-yet-mapped temporary ID, or an invalid number.
        """
        if value is None:
            raise TemporaryIdError("Issue number is missing")
        text = strip_hash(value)
        if is_temporary_id(text):
            entry = self.get(text)
            if entry is None or entry.number is None:
                raise TemporaryIdError(f"Temporary ID '{text}' not found in map. Ensure the issue was created before it is referenced.")
            return IssueRef(repo=entry.repo or default_repo, number=entry.number, was_temporary=True)
        if text.lower().startswith("aw_"):
            raise TemporaryIdError(f"Invalid temporary ID format: '{text}'. {FORMAT_HINT}")
        if isinstance(value, bool) or not text.isdigit() or int(text) <= 0:
            raise TemporaryIdError(
                f"Invalid issue number: {value}. Expected either a temporary ID or a positive issue number."
            )
        return IssueRef(repo=default_repo, number=int(text))

    def resolve_project_url(self, value: str) -> str:
        """Resolve ``#aw_xxx`` (or bare ``aw_xxx``) to the project URL it was minted for; URLs pass through."""
        text = strip_hash(value)
        if not is_temporary_id(text):
            return value
        entry = self.get(text)
        if entry is None or entry.project_url is None:
            raise TemporaryIdError(f"Temporary project ID '{text}' not found in map. Ensure the project was created before it is referenced.")
        return entry.project_url

    def resolve_issue_url(self, value: str, server_url: str = "https://github.com") -> str:
        """Rewrite ``.../issues/#aw_xxx`` to the URL of the issue minted for it; other URLs pass through."""
        match = _ISSUE_URL_TEMPORARY_ID_RE.search(value or "")
        if not match:
            return value
        entry = self.get(match.group(1))
        if entry is None or entry.number is None:
            raise TemporaryIdError(f"Temporary ID '{match.group(1)}' not found in map. Ensure the issue was created before it is referenced.")
        return f"{server_url}/{entry.repo}/issues/{entry.number}"

    def replace_references(self, text: str, current_repo: str | None = None) -> str:
        """Replace ``#aw_xxx`` issue references with ``#N`` (same repo) or ``owner/repo#N``.

        Unknown IDs are left untouched.
        """

        def _replace(match: re.Match) -> str:
            entry = self.get(match.group(1))
            if entry is None:
                return match.group(0)
            if entry.project_url is not None:
                return entry.project_url
            if current_repo and entry.repo == current_repo:
                return f"#{entry.number}"
            return f"{entry.repo}#{entry.number}"

        return TEMPORARY_ID_RE.sub(_replace, text)

    def has_unresolved(self, text: str) -> bool:
        return any(self.get(match.group(1)) is None for match in TEMPORARY_ID_RE.finditer(text or ""))

    def to_dict(self) -> dict:
        return {
            key: {k: v for k, v in vars(entry).items() if v is not None}
            for key, entry in self._entries.items()
        }


def extract_references(item: dict) -> set[str]:
    """Return every normalized temporary ID that ``item`` refers to."""
    refs: set[str] = set()
    for field_name in TEXT_FIELDS:
        value = item.get(field_name)
        if isinstance(value, str):
            refs.update(match.group(1).lower() for match in TEMPORARY_ID_RE.finditer(value))
    for field_name in NUMBER_FIELDS:
        value = item.get(field_name)
        if value is not None and is_temporary_id(strip_hash(value)):
            refs.add(normalize_temporary_id(value))
    for field_name in URL_FIELDS:
        value = item.get(field_name)
        if not isinstance(value, str):
            continue
        match = _ISSUE_URL_TEMPORARY_ID_RE.search(value)
        if match:
            refs.add(match.group(1).lower())
        elif is_temporary_id(strip_hash(value)):
            refs.add(normalize_temporary_id(value))
    return refs


def created_temporary_id(item: dict) -> str | None:
    """The temporary ID ``item`` will mint when dispatched, if it declares one."""
    value = item.get("temporary_id")
    if value is not None and is_temporary_id(strip_hash(value)):
        return normalize_temporary_id(value)
    return None
