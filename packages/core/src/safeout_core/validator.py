"""Per-record schema validation.

``validate_item`` checks one record against its :class:`TypeSchema`:
field presence and primitive types, enums, patterns, lengths, the numeric
flavours used for issue and pull request numbers, cross-field rules and the
type-specific policies (labels, assignees). String fields marked for
sanitization are replaced by their sanitized form.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from safeout_core.errors import E_LIMIT, E_MENTION, E_VALIDATION, SafeOutputError, UnsupportedTypeError
from safeout_core.sanitize import find_unauthorized_mentions, sanitize_content
from safeout_core.schema import MAX_LABEL_LENGTH, MAX_LABELS_PER_CALL, FieldSpec, OutputType, TypeSchema
from safeout_core.temporary_id import FORMAT_HINT, is_temporary_id, strip_hash

logger = logging.getLogger(__name__)

Sanitizer = Callable[[str, Iterable[str]], str]


@dataclass
class ValidationResult:
    is_valid: bool
    error: str | None = None
    normalized_item: dict | None = None


class FieldValidationError(SafeOutputError):
    code = E_VALIDATION


@dataclass
class _Context:
    allowed_mentions: list[str]
    sanitizer: Sanitizer
    strict_mentions: bool

    def sanitize(self, field_name: str, value: str) -> str:
        if self.strict_mentions:
            unauthorized = find_unauthorized_mentions(value, self.allowed_mentions)
            if unauthorized:
                allowed = ", ".join(self.allowed_mentions) or "none"
                raise FieldValidationError(
                    f"'{field_name}' mentions users who may not be mentioned: "
                    f"{', '.join('@' + name for name in unauthorized)}. Allowed mentions: {allowed}",
                    code=E_MENTION,
                )
        return self.sanitizer(value, self.allowed_mentions)


def _as_positive_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def validate_positive_integer(field_name: str, value) -> int:
    number = _as_positive_int(value)
    if number is None:
        raise FieldValidationError(f"'{field_name}' must be a positive integer (got {value!r})")
    return number


def validate_issue_or_pr_number(field_name: str, value) -> int:
    number = _as_positive_int(value)
    if number is None:
        raise FieldValidationError(f"'{field_name}' must be a valid issue or pull request number (got {value!r})")
    return number


def validate_issue_number_or_temporary_id(field_name: str, value) -> int | str:
    """Accept a positive number or a temporary ID; temporary IDs are returned lowercased without ``#``."""
    if isinstance(value, str) and is_temporary_id(strip_hash(value)):
        return strip_hash(value).lower()
    number = _as_positive_int(value)
    if number is None:
        raise FieldValidationError(
            f"'{field_name}' must be a positive integer or a temporary ID (got {value!r}). {FORMAT_HINT}"
        )
    return number


def _enum_error(field_name: str, options: tuple[str, ...]) -> FieldValidationError:
    if len(options) == 2:
        return FieldValidationError(f"'{field_name}' must be '{options[0]}' or '{options[1]}'")
    return FieldValidationError(f"'{field_name}' must be one of: {', '.join(options)}")


def _validate_string(field_name: str, value, spec: FieldSpec, ctx: _Context) -> str:
    if spec.enum:
        if isinstance(value, str):
            for option in spec.enum:
                if option.lower() == value.strip().lower():
                    return option
        raise _enum_error(field_name, spec.enum)

    if not isinstance(value, str):
        raise FieldValidationError(f"'{field_name}' must be a string (got {type(value).__name__})")

    if spec.temporary_id_ref and is_temporary_id(strip_hash(value)):
        return "#" + strip_hash(value).lower()

    if spec.pattern and not re.search(spec.pattern, value):
        raise FieldValidationError(f"'{field_name}' {spec.pattern_error or f'must match pattern {spec.pattern}'}")

    if spec.sanitize:
        value = ctx.sanitize(field_name, value)

    if spec.max_length is not None and len(value) > spec.max_length:
        raise FieldValidationError(
            f"'{field_name}' is too long ({len(value)} characters). Maximum length: {spec.max_length}"
        )
    return value


def _validate_array(field_name: str, value, spec: FieldSpec, ctx: _Context) -> list:
    if not isinstance(value, list):
        raise FieldValidationError(f"'{field_name}' must be an array")
    if spec.item_type != "string":
        return list(value)
    if not all(isinstance(item, str) for item in value):
        raise FieldValidationError(f"'{field_name}' must contain only strings")
    items = [ctx.sanitize(field_name, item) if spec.item_sanitize else item for item in value]
    if spec.item_max_length is not None:
        items = [item[: spec.item_max_length] for item in items]
    return items


def validate_field(field_name: str, value, spec: FieldSpec, ctx: _Context):
    """Validate one present (non-None) value and return its normalized form."""
    if spec.positive_integer or spec.optional_positive_integer:
        return validate_positive_integer(field_name, value)
    if spec.issue_or_pr_number:
        return validate_issue_or_pr_number(field_name, value)
    if spec.issue_number_or_temporary_id:
        return validate_issue_number_or_temporary_id(field_name, value)

    if spec.type == "boolean":
        if not isinstance(value, bool):
            raise FieldValidationError(f"'{field_name}' must be a boolean (got {value!r})")
        return value
    if spec.type in ("number", "integer"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise FieldValidationError(f"'{field_name}' must be a number (got {value!r})")
        return value
    if spec.type == "choice":
        if not isinstance(value, str) or value not in spec.options:
            raise FieldValidationError(f"'{field_name}' must be one of: {', '.join(spec.options)} (got {value!r})")
        return ctx.sanitize(field_name, value)
    if spec.type == "array":
        return _validate_array(field_name, value, spec, ctx)
    if spec.type == "object":
        if not isinstance(value, dict):
            raise FieldValidationError(f"'{field_name}' must be an object")
        return value
    return _validate_string(field_name, value, spec, ctx)


def _check_custom(rule: str | None, item: dict) -> None:
    if not rule:
        return
    if rule.startswith("requires_one_of:"):
        names = rule.split(":", 1)[1].split(",")
        if all(item.get(name) is None for name in names):
            raise FieldValidationError(f"requires at least one of: {', '.join(names)}")
    elif rule == "start_line_le_line":
        start_line = item.get("start_line")
        if start_line is not None and start_line > item["line"]:
            raise FieldValidationError("'start_line' must be less than or equal to 'line'")
    elif rule == "parent_and_sub_different":
        if item["parent_issue_number"] == item["sub_issue_number"]:
            raise FieldValidationError("'parent_issue_number' and 'sub_issue_number' must be different")
    else:
        raise FieldValidationError(f"unknown custom validation rule {rule!r}")


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(value.lower(), pattern.lower()) for pattern in patterns)


def apply_label_policy(labels, allowed: list[str], blocked: list[str], required: bool) -> list[str]:
    """Trim, filter and deduplicate labels.

    Blocked patterns are applied before the allowed list. An empty allowed
    list allows every label.
    """
    if not isinstance(labels, list):
        raise FieldValidationError("'labels' must be an array")
    if len(labels) > MAX_LABELS_PER_CALL:
        raise FieldValidationError(
            f"Cannot add more than {MAX_LABELS_PER_CALL} labels (received {len(labels)})", code=E_LIMIT
        )

    removals = [label for label in labels if label.strip().startswith("-")]
    if removals:
        raise FieldValidationError(f"Label removal is not permitted. Found line item: {removals[0].strip()}")

    result: list[str] = []
    for label in labels:
        label = label.strip()[:MAX_LABEL_LENGTH]
        if not label or label in result:
            continue
        if blocked and _matches_any(label, blocked):
            logger.info("Label %r is blocked", label)
            continue
        if allowed and label not in allowed:
            logger.info("Label %r is not in the allowed list", label)
            continue
        result.append(label)

    if required and not result:
        listed = ", ".join(allowed) if allowed else "the repository's available labels"
        raise FieldValidationError(f"No valid labels found. Allowed labels: {listed}")
    return result


def is_username_blocked(username: str, blocked: Iterable[str]) -> bool:
    """Case-insensitive glob match of ``username`` against ``blocked``."""
    return bool(username) and _matches_any(username, blocked)


def _check_variant(output_type: OutputType, item: dict, schema: TypeSchema) -> None:
    if output_type is OutputType.ADD_LABELS:
        item["labels"] = apply_label_policy(item.get("labels"), schema.allowed, schema.blocked, required=True)
    elif output_type in (OutputType.CREATE_ISSUE, OutputType.CREATE_PULL_REQUEST):
        if item.get("labels") is not None:
            item["labels"] = apply_label_policy(item["labels"], schema.allowed, schema.blocked, required=False)
        blocked_users = schema.options.get("blocked_assignees") or []
        if item.get("assignees") and blocked_users:
            kept = [user for user in item["assignees"] if not is_username_blocked(user, blocked_users)]
            if len(kept) != len(item["assignees"]):
                logger.info("Dropped %d blocked assignee(s)", len(item["assignees"]) - len(kept))
            item["assignees"] = kept
    elif output_type in (
        OutputType.ADD_COMMENT,
        OutputType.UPDATE_ISSUE,
        OutputType.CLOSE_ISSUE,
        OutputType.CREATE_PULL_REQUEST_REVIEW_COMMENT,
        OutputType.SUBMIT_PULL_REQUEST_REVIEW,
        OutputType.LINK_SUB_ISSUE,
        OutputType.UPDATE_RELEASE,
        OutputType.CREATE_PROJECT,
        OutputType.CREATE_PROJECT_STATUS_UPDATE,
        OutputType.CREATE_DISCUSSION,
        OutputType.MISSING_TOOL,
        OutputType.NOOP,
    ):
        pass
    else:
        raise UnsupportedTypeError(f"no validation defined for type '{output_type.value}'")


def validate_item(
    item: dict,
    schema: TypeSchema,
    line_number: int,
    allowed_mentions: Iterable[str] = (),
    sanitizer: Sanitizer = sanitize_content,
    strict_mentions: bool = False,
) -> ValidationResult:
    """Validate ``item`` against ``schema``.

    Never raises for bad input; failures come back as ``ValidationResult``
    with an error of the form ``"Line N: <CODE>: <type> <reason>"``.
    """
    ctx = _Context(allowed_mentions=list(allowed_mentions), sanitizer=sanitizer, strict_mentions=strict_mentions)
    normalized = dict(item)
    try:
        for field_name, spec in schema.fields.items():
            value = normalized.get(field_name)
            if value is None:
                if spec.default is not None:
                    normalized[field_name] = spec.default
                elif spec.required:
                    raise FieldValidationError(f"requires a '{field_name}' field ({spec.type})")
                continue
            normalized[field_name] = validate_field(field_name, value, spec, ctx)

        _check_custom(schema.custom_validation, normalized)
        if schema.output_type is not None:
            _check_variant(schema.output_type, normalized, schema)
    except SafeOutputError as exc:
        return ValidationResult(is_valid=False, error=f"Line {line_number}: {exc.code}: {schema.name} {exc.message}")

    return ValidationResult(is_valid=True, normalized_item=normalized)
