"""Ingestion: agent output file → validated records + errors.

Lines are processed strictly in order. A bad line is reported with its
1-based line number and dropped; every other line is still processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from safeout_core.errors import E_MISSING_TYPE, E_UNKNOWN_TYPE
from safeout_core.mentions import MentionResolver
from safeout_core.parsing import parse_line
from safeout_core.quota import QuotaTracker
from safeout_core.sanitize import sanitize_content
from safeout_core.schema import OutputType, TypeSchema, normalize_type_name
from safeout_core.validator import Sanitizer, validate_item

logger = logging.getLogger(__name__)

PATCH_GLOB = "aw-*.patch"


@dataclass
class CollectedOutput:
    items: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    has_patch: bool = False

    @property
    def output_types(self) -> list[str]:
        return sorted(self.counts)

    def to_dict(self) -> dict:
        return {"items": self.items, "errors": self.errors}


def _normalize_temporary_id_key(record: dict) -> None:
    if "temporaryId" in record:
        value = record.pop("temporaryId")
        record.setdefault("temporary_id", value)


def collect_output(
    text: str,
    schemas: dict[str, TypeSchema],
    mention_resolver: MentionResolver | None = None,
    sanitizer: Sanitizer = sanitize_content,
) -> CollectedOutput:
    """Parse and validate every line of ``text`` against ``schemas``."""
    tracker = QuotaTracker(schemas)
    resolver = mention_resolver or MentionResolver()
    result = CollectedOutput()
    expected = ", ".join(sorted(schemas))

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue

        record, error = parse_line(line, line_number)
        if error:
            result.errors.append(error)
            continue

        if not isinstance(record, dict) or not isinstance(record.get("type"), str) or not record["type"].strip():
            result.errors.append(f"Line {line_number}: {E_MISSING_TYPE}: Missing required 'type' field")
            continue

        item_type = normalize_type_name(record["type"].strip())
        record["type"] = item_type
        if item_type not in schemas:
            result.errors.append(
                f"Line {line_number}: {E_UNKNOWN_TYPE}: Unexpected output type '{item_type}'. Expected one of: {expected}"
            )
            continue

        if not tracker.can_accept(item_type):
            result.errors.append(f"Line {line_number}: {tracker.exceeded_message(item_type)}")
            continue

        _normalize_temporary_id_key(record)
        resolver.observe(record, schemas[item_type])

        validation = validate_item(
            record,
            schemas[item_type],
            line_number,
            allowed_mentions=resolver.allowed,
            sanitizer=sanitizer,
            strict_mentions=resolver.strict,
        )
        if not validation.is_valid:
            result.errors.append(validation.error)
            continue

        tracker.record(item_type)
        result.items.append(validation.normalized_item)

    result.errors.extend(tracker.check_minimums())
    result.counts = tracker.counts()
    logger.info("Collected %d item(s), %d error(s)", len(result.items), len(result.errors))
    return result


def detect_patch(patch_dir: str | Path | None, schemas: dict[str, TypeSchema]) -> bool:
    """True when a patch is available for a pull request, or empty pull requests are allowed."""
    if patch_dir and any(Path(patch_dir).glob(PATCH_GLOB)):
        return True
    schema = schemas.get(OutputType.CREATE_PULL_REQUEST.value)
    return bool(schema and schema.options.get("allow_empty"))


def collect_file(
    path: str | Path,
    schemas: dict[str, TypeSchema],
    mention_resolver: MentionResolver | None = None,
    patch_dir: str | Path | None = None,
    sanitizer: Sanitizer = sanitize_content,
) -> CollectedOutput:
    """Read ``path`` and collect it. A missing file is an empty batch.

    Raises:
        OSError: the file exists but cannot be read.
    """
    path = Path(path)
    if not path.exists():
        logger.info("Output file %s does not exist; nothing to collect", path)
        text = ""
    else:
        text = path.read_text(encoding="utf-8")
    result = collect_output(text, schemas, mention_resolver=mention_resolver, sanitizer=sanitizer)
    result.has_patch = detect_patch(patch_dir, schemas)
    return result
