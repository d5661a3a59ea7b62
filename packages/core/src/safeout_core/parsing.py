"""Line parsing for agent output.

Each non-blank line of the agent's output file is expected to hold one JSON
object. Agents frequently emit almost-JSON (single quotes, bare keys, trailing
commas, a truncated closing brace), so strict parsing is followed by a single
heuristic repair attempt before the line is reported as invalid.
"""

from __future__ import annotations

import json
import logging
import re

from safeout_core.errors import E_PARSE, ParseError, SafeOutputError

logger = logging.getLogger(__name__)

# Deeper records are rejected; no operation needs more than a few levels.
MAX_NESTING_DEPTH = 64

_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$-]*)(\s*:)")
_PY_LITERAL_RE = re.compile(r"\b(True|False|None)\b")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}

# Keys that remap object internals in the consumers of these records.
_DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read a quoted literal starting at ``start`` and return it as a JSON string.

    Handles both quote styles, escapes raw control characters and closes an
    unterminated literal at end of input.
    """
    quote = text[start]
    chars: list[str] = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            chars.append("'" if quote == "'" and nxt == "'" else ch + nxt)
            i += 2
            continue
        if ch == quote:
            return '"' + "".join(chars) + '"', i + 1
        if ch == '"':
            chars.append('\\"')
        elif ch in _CONTROL_ESCAPES:
            chars.append(_CONTROL_ESCAPES[ch])
        elif ord(ch) < 0x20:
            chars.append(f"\\u{ord(ch):04x}")
        else:
            chars.append(ch)
        i += 1
    return '"' + "".join(chars) + '"', i


def _split_segments(text: str) -> list[tuple[bool, str]]:
    """Split text into ``(is_string, chunk)`` pairs so fixes never touch string contents."""
    segments: list[tuple[bool, str]] = []
    buf: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in ('"', "'"):
            if buf:
                segments.append((False, "".join(buf)))
                buf = []
            literal, i = _read_string(text, i)
            segments.append((True, literal))
            continue
        buf.append(ch)
        i += 1
    if buf:
        segments.append((False, "".join(buf)))
    return segments


def _fix_code(chunk: str) -> str:
    chunk = _BARE_KEY_RE.sub(r'\1"\2"\3', chunk)
    chunk = _PY_LITERAL_RE.sub(lambda m: _PY_LITERALS[m.group(1)], chunk)
    return _TRAILING_COMMA_RE.sub(r"\1", chunk)


def repair_json(text: str) -> str:
    """Best-effort repair of almost-JSON text.

    Fixes applied, in order: markdown code fences removed, single-quoted
    strings converted to double-quoted ones, raw control characters inside
    strings escaped, bare object keys quoted, Python ``True/False/None``
    mapped to JSON literals, trailing commas removed, unclosed brackets and
    braces closed.
    """
    repaired = text.strip()
    if repaired.startswith("```"):
        repaired = _CODE_FENCE_RE.sub("", repaired)

    segments = [(is_string, chunk if is_string else _fix_code(chunk)) for is_string, chunk in _split_segments(repaired)]

    closers: list[str] = []
    for is_string, chunk in segments:
        if is_string:
            continue
        for ch in chunk:
            if ch == "{":
                closers.append("}")
            elif ch == "[":
                closers.append("]")
            elif ch in "}]" and closers and closers[-1] == ch:
                closers.pop()

    repaired = "".join(chunk for _, chunk in segments)
    if closers:
        repaired = repaired.rstrip()
        if repaired.endswith(","):
            repaired = repaired[:-1]
        repaired += "".join(reversed(closers))
    return repaired


def _reject_constant(name: str):
    raise ValueError(f"Unexpected token {name}")


def _loads(text: str):
    # JSON proper has no NaN/Infinity; Python's json accepts them by default.
    return json.loads(text, parse_constant=_reject_constant)


def _is_dangerous_key(key: str) -> bool:
    if key in _DANGEROUS_KEYS:
        return True
    return len(key) > 4 and key.startswith("__") and key.endswith("__")


def _shallow_copy(value):
    if isinstance(value, dict):
        return {key: item for key, item in value.items() if not _is_dangerous_key(key)}
    if isinstance(value, list):
        return list(value)
    return value


def strip_dangerous_keys(value, max_depth: int = MAX_NESTING_DEPTH):
    """Return a deep copy of ``value`` with dangerous keys removed at every depth.

    Walks the structure with an explicit stack so deeply nested input cannot
    exhaust the interpreter's recursion limit.

    Raises:
        SafeOutputError: (``E_PARSE``) when containers nest deeper than ``max_depth``.
    """
    root = _shallow_copy(value)
    stack = [(root, 1)] if isinstance(root, (dict, list)) else []
    while stack:
        container, depth = stack.pop()
        if depth > max_depth:
            raise SafeOutputError(f"Record nesting exceeds {max_depth} levels", code=E_PARSE)
        keys = container.keys() if isinstance(container, dict) else range(len(container))
        for key in keys:
            child = container[key]
            if isinstance(child, (dict, list)):
                child = _shallow_copy(child)
                container[key] = child
                stack.append((child, depth + 1))
    return root


def parse_json_with_repair(text: str):
    """Parse ``text`` as JSON, falling back to one repair attempt.

    Raises:
        ParseError: when both the strict and the repaired parse fail.
        SafeOutputError: (``E_PARSE``) when the record nests too deeply.
    """
    try:
        parsed = _loads(text)
    except (ValueError, RecursionError) as original_error:
        try:
            parsed = _loads(repair_json(text))
        except (ValueError, RecursionError) as repair_error:
            logger.info("invalid input json: %s", text)
            raise ParseError(str(original_error), str(repair_error)) from repair_error
    return strip_dangerous_keys(parsed)


def parse_line(line: str, line_number: int) -> tuple[object | None, str | None]:
    """Parse one line. Returns ``(record, None)`` or ``(None, error_message)``."""
    try:
        return parse_json_with_repair(line), None
    except ParseError as exc:
        return None, f"Line {line_number}: Invalid JSON - {exc}"
    except SafeOutputError as exc:
        return None, f"Line {line_number}: {exc}"
