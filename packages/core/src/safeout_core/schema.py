"""Record types, field rules and the typed schema loader.

Two sources feed a batch's schemas:

* ``BUILTIN_RULES``: the fixed field rules for every :class:`OutputType`.
* the ``safe_outputs`` section of the configuration: which types are enabled
  for this run, their ``max``/``min`` quotas and per-type policy (allowed
  labels, target mode, cross-repo allow-list, ...). Types that are not
  built in are custom jobs and declare their fields with ``inputs``.

``load_type_schemas`` merges both into :class:`TypeSchema` objects and raises
:class:`~safeout_core.errors.ConfigError` on the first malformed entry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from safeout_core.errors import ConfigError
from safeout_core.repos import RepoResolver, parse_allowed_repos

MAX_BODY_LENGTH = 65000
MAX_TITLE_LENGTH = 128
MAX_LABEL_LENGTH = 64
MAX_LABELS_PER_CALL = 10

PROJECT_URL_PATTERN = r"^https://[^/]+/(orgs|users)/[^/]+/projects/\d+"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

INPUT_FIELD_TYPES = ("string", "boolean", "number", "choice")


class OutputType(str, Enum):
    CREATE_ISSUE = "create_issue"
    ADD_COMMENT = "add_comment"
    ADD_LABELS = "add_labels"
    UPDATE_ISSUE = "update_issue"
    CLOSE_ISSUE = "close_issue"
    CREATE_PULL_REQUEST = "create_pull_request"
    CREATE_PULL_REQUEST_REVIEW_COMMENT = "create_pull_request_review_comment"
    SUBMIT_PULL_REQUEST_REVIEW = "submit_pull_request_review"
    LINK_SUB_ISSUE = "link_sub_issue"
    UPDATE_RELEASE = "update_release"
    CREATE_PROJECT = "create_project"
    CREATE_PROJECT_STATUS_UPDATE = "create_project_status_update"
    CREATE_DISCUSSION = "create_discussion"
    MISSING_TOOL = "missing_tool"
    NOOP = "noop"

    @classmethod
    def lookup(cls, name: str) -> OutputType | None:
        """Return the member for ``name`` or None for custom (non built-in) types."""
        try:
            return cls(name)
        except ValueError:
            return None


def normalize_type_name(name: str) -> str:
    return name.replace("-", "_")


@dataclass(frozen=True)
class FieldSpec:
    """Constraints for a single record field."""

    type: str = "string"
    required: bool = False
    default: object = None
    options: tuple[str, ...] = ()
    sanitize: bool = False
    max_length: int | None = None
    positive_integer: bool = False
    optional_positive_integer: bool = False
    issue_or_pr_number: bool = False
    issue_number_or_temporary_id: bool = False
    temporary_id_ref: bool = False
    enum: tuple[str, ...] = ()
    item_type: str | None = None
    item_sanitize: bool = False
    item_max_length: int | None = None
    pattern: str | None = None
    pattern_error: str | None = None


@dataclass(frozen=True)
class TypeRules:
    default_max: int = 1
    fields: dict[str, FieldSpec] = field(default_factory=dict)
    custom_validation: str | None = None


def _string(max_length: int | None = None, required: bool = False, sanitize: bool = True, **kwargs) -> FieldSpec:
    return FieldSpec(type="string", required=required, sanitize=sanitize, max_length=max_length, **kwargs)


def _labels(required: bool = False) -> FieldSpec:
    return FieldSpec(type="array", required=required, item_type="string", item_sanitize=True, item_max_length=128)


_ISSUE_OR_PR = FieldSpec(type="integer", issue_or_pr_number=True)
_OPTIONAL_POSITIVE = FieldSpec(type="integer", optional_positive_integer=True)
_REPO = _string(256, sanitize=False)
_TEMPORARY_ID = _string(sanitize=False)

BUILTIN_RULES: dict[OutputType, TypeRules] = {
    OutputType.CREATE_ISSUE: TypeRules(
        fields={
            "title": _string(MAX_TITLE_LENGTH, required=True),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "labels": _labels(),
            "assignees": FieldSpec(type="array", item_type="string", item_sanitize=True, item_max_length=39),
            "parent": FieldSpec(type="integer", issue_number_or_temporary_id=True),
            "temporary_id": _TEMPORARY_ID,
            "repo": _REPO,
        }
    ),
    OutputType.ADD_COMMENT: TypeRules(
        fields={
            "body": _string(MAX_BODY_LENGTH, required=True),
            "item_number": FieldSpec(type="integer", issue_number_or_temporary_id=True),
            "repo": _REPO,
        }
    ),
    OutputType.ADD_LABELS: TypeRules(
        default_max=5,
        fields={
            "labels": _labels(required=True),
            "item_number": _ISSUE_OR_PR,
            "repo": _REPO,
        },
    ),
    OutputType.UPDATE_ISSUE: TypeRules(
        custom_validation="requires_one_of:status,title,body",
        fields={
            "status": FieldSpec(enum=("open", "closed")),
            "title": _string(MAX_TITLE_LENGTH),
            "body": _string(MAX_BODY_LENGTH),
            "issue_number": _ISSUE_OR_PR,
            "repo": _REPO,
        },
    ),
    OutputType.CLOSE_ISSUE: TypeRules(
        fields={
            "body": _string(MAX_BODY_LENGTH, required=True),
            "issue_number": _OPTIONAL_POSITIVE,
            "repo": _REPO,
        }
    ),
    OutputType.CREATE_PULL_REQUEST: TypeRules(
        fields={
            "title": _string(MAX_TITLE_LENGTH, required=True),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "branch": _string(256, required=True),
            "labels": _labels(),
            "draft": FieldSpec(type="boolean"),
            "repo": _REPO,
        }
    ),
    OutputType.CREATE_PULL_REQUEST_REVIEW_COMMENT: TypeRules(
        default_max=10,
        custom_validation="start_line_le_line",
        fields={
            "path": _string(required=True, sanitize=False),
            "line": FieldSpec(type="integer", required=True, positive_integer=True),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "start_line": _OPTIONAL_POSITIVE,
            "side": FieldSpec(enum=("LEFT", "RIGHT")),
            "start_side": FieldSpec(enum=("LEFT", "RIGHT")),
            "pull_request_number": _OPTIONAL_POSITIVE,
            "repo": _REPO,
        },
    ),
    OutputType.SUBMIT_PULL_REQUEST_REVIEW: TypeRules(
        fields={
            "body": _string(MAX_BODY_LENGTH),
            "event": FieldSpec(enum=("APPROVE", "REQUEST_CHANGES", "COMMENT")),
        }
    ),
    OutputType.LINK_SUB_ISSUE: TypeRules(
        default_max=5,
        custom_validation="parent_and_sub_different",
        fields={
            "parent_issue_number": FieldSpec(type="integer", required=True, issue_number_or_temporary_id=True),
            "sub_issue_number": FieldSpec(type="integer", required=True, issue_number_or_temporary_id=True),
            "repo": _REPO,
        },
    ),
    OutputType.UPDATE_RELEASE: TypeRules(
        fields={
            "tag": _string(256),
            "operation": FieldSpec(required=True, enum=("replace", "append", "prepend")),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "repo": _REPO,
        }
    ),
    OutputType.CREATE_PROJECT: TypeRules(
        fields={
            "title": _string(256),
            "owner": _string(128),
            "owner_type": FieldSpec(enum=("org", "user")),
            "item_url": _string(512),
            "temporary_id": _TEMPORARY_ID,
        }
    ),
    OutputType.CREATE_PROJECT_STATUS_UPDATE: TypeRules(
        default_max=10,
        fields={
            "project": _string(
                512,
                required=True,
                temporary_id_ref=True,
                pattern=PROJECT_URL_PATTERN,
                pattern_error="must be a full GitHub project URL (e.g., https://github.com/orgs/myorg/projects/42)",
            ),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "status": FieldSpec(enum=("INACTIVE", "ON_TRACK", "AT_RISK", "OFF_TRACK", "COMPLETE")),
            "start_date": FieldSpec(pattern=DATE_PATTERN, pattern_error="must be in YYYY-MM-DD format"),
            "target_date": FieldSpec(pattern=DATE_PATTERN, pattern_error="must be in YYYY-MM-DD format"),
        },
    ),
    OutputType.CREATE_DISCUSSION: TypeRules(
        fields={
            "title": _string(MAX_TITLE_LENGTH, required=True),
            "body": _string(MAX_BODY_LENGTH, required=True),
            "category": _string(128),
            "repo": _REPO,
        }
    ),
    OutputType.MISSING_TOOL: TypeRules(
        default_max=20,
        fields={
            "tool": _string(128),
            "reason": _string(256, required=True),
            "alternatives": _string(512),
        },
    ),
    OutputType.NOOP: TypeRules(
        fields={
            "message": _string(MAX_BODY_LENGTH, required=True),
        }
    ),
}


@dataclass
class TypeSchema:
    """The resolved schema and policy for one enabled record type."""

    name: str
    max: int = 1
    min: int = 0
    fields: dict[str, FieldSpec] = field(default_factory=dict)
    custom_validation: str | None = None
    allowed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    target: str = "triggering"
    target_repo: str | None = None
    allowed_repos: set[str] = field(default_factory=set)
    footer: bool = True
    options: dict = field(default_factory=dict)

    @property
    def output_type(self) -> OutputType | None:
        return OutputType.lookup(self.name)

    def repo_resolver(self, default_repo: str, allowed_repos: set[str] | None = None) -> RepoResolver:
        """Resolver for records of this type: its own target repo first, global allow-list widened by its own."""
        return RepoResolver(self.target_repo or default_repo, set(allowed_repos or ()) | self.allowed_repos)


_POLICY_KEYS = {"max", "min", "inputs", "allowed", "blocked", "target", "target_repo", "allowed_repos", "footer"}


def _normalize_key(key: str) -> str:
    return key.replace("-", "_")


def _as_count(type_name: str, key: str, value, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"safe_outputs.{type_name}.{key} must be a non-negative integer, got {value!r}")
    return value


def _as_str_list(type_name: str, key: str, value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"safe_outputs.{type_name}.{key} must be a list of strings")
    return list(value)


def _load_input_fields(type_name: str, inputs) -> dict[str, FieldSpec]:
    if not isinstance(inputs, dict):
        raise ConfigError(f"safe_outputs.{type_name}.inputs must be a mapping of field name to definition")

    fields: dict[str, FieldSpec] = {}
    for field_name, definition in inputs.items():
        definition = definition or {}
        if not isinstance(definition, dict):
            raise ConfigError(f"safe_outputs.{type_name}.inputs.{field_name} must be a mapping")
        field_type = definition.get("type", "string")
        if field_type not in INPUT_FIELD_TYPES:
            raise ConfigError(
                f"safe_outputs.{type_name}.inputs.{field_name}: unknown type {field_type!r}. "
                f"Expected one of: {', '.join(INPUT_FIELD_TYPES)}"
            )
        options = _as_str_list(type_name, f"inputs.{field_name}.options", definition.get("options"))
        if field_type == "choice" and not options:
            raise ConfigError(f"safe_outputs.{type_name}.inputs.{field_name}: choice fields require options")
        fields[field_name] = FieldSpec(
            type=field_type,
            required=bool(definition.get("required", False)),
            default=definition.get("default"),
            options=tuple(options),
            sanitize=field_type in ("string", "choice"),
        )
    return fields


def _validate_pattern(type_name: str, field_name: str, spec: FieldSpec) -> None:
    if spec.pattern is None:
        return
    try:
        re.compile(spec.pattern)
    except re.error as exc:
        raise ConfigError(f"{type_name}.{field_name}: invalid pattern {spec.pattern!r}: {exc}") from exc


def load_type_schema(type_name: str, raw) -> TypeSchema:
    """Build the schema for a single enabled type from its configuration entry."""
    name = normalize_type_name(type_name)
    if raw is None or raw is True:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"safe_outputs.{name} must be a mapping, got {type(raw).__name__}")
    raw = {_normalize_key(k): v for k, v in raw.items()}

    output_type = OutputType.lookup(name)
    rules = BUILTIN_RULES.get(output_type) if output_type is not None else None

    if rules is not None:
        fields = dict(rules.fields)
        if "inputs" in raw:
            raise ConfigError(f"safe_outputs.{name}: 'inputs' is only supported for custom types")
        default_max = rules.default_max
    else:
        if "inputs" not in raw:
            raise ConfigError(f"safe_outputs.{name}: unknown built-in type; custom types must declare 'inputs'")
        fields = _load_input_fields(name, raw["inputs"])
        default_max = 1

    for field_name, spec in fields.items():
        _validate_pattern(name, field_name, spec)

    max_count = _as_count(name, "max", raw.get("max"), default_max)
    min_count = _as_count(name, "min", raw.get("min"), 0)
    if min_count > max_count:
        raise ConfigError(f"safe_outputs.{name}: min ({min_count}) cannot exceed max ({max_count})")

    target = raw.get("target", "triggering")
    if isinstance(target, int) and not isinstance(target, bool):
        target = str(target)
    if not isinstance(target, str):
        raise ConfigError(f"safe_outputs.{name}.target must be 'triggering', '*' or an issue number")

    return TypeSchema(
        name=name,
        max=max_count,
        min=min_count,
        fields=fields,
        custom_validation=rules.custom_validation if rules else None,
        allowed=_as_str_list(name, "allowed", raw.get("allowed")),
        blocked=_as_str_list(name, "blocked", raw.get("blocked")),
        target=target,
        target_repo=raw.get("target_repo"),
        allowed_repos=parse_allowed_repos(raw.get("allowed_repos")),
        footer=raw.get("footer", True) is not False,
        options={k: v for k, v in raw.items() if k not in _POLICY_KEYS},
    )


def load_type_schemas(raw) -> dict[str, TypeSchema]:
    """Load every entry of the ``safe_outputs`` configuration section.

    Keys are normalized (hyphens to underscores) so ``create-issue`` and
    ``create_issue`` name the same type.

    Raises:
        ConfigError: on the first malformed entry.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("safe_outputs must be a mapping of type name to configuration")

    schemas: dict[str, TypeSchema] = {}
    for type_name, entry in raw.items():
        if not isinstance(type_name, str):
            raise ConfigError(f"safe_outputs keys must be strings, got {type_name!r}")
        schema = load_type_schema(type_name, entry)
        if schema.name in schemas:
            raise ConfigError(f"safe_outputs.{schema.name} is declared more than once")
        schemas[schema.name] = schema
    return schemas
