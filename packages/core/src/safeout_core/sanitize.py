"""Content sanitization for agent-authored text.

``sanitize_content(text, allowed_mentions)`` is a pure function and is
idempotent: sanitizing already-sanitized text returns it unchanged.

Steps, in order:
  1. strip ANSI escape sequences, control characters, zero-width and
     bidirectional-override characters
  2. map fullwidth ASCII look-alikes to plain ASCII
  3. remove HTML comments (hidden content)
  4. NFC-normalize
  5. wrap @mentions of users outside the allow-list in backticks so they
     render as code and do not notify anyone
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

ALLOW_ALL_MENTIONS = "*"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_INVISIBLE_RE = re.compile(r"[\u200b-\u200f\u202a-\u202e\u2060-\u2064\u2066-\u2069\ufeff]")
_FULLWIDTH_RE = re.compile(r"[\uff01-\uff5e]")
_HTML_COMMENT_RE = re.compile(r"<!--.*?(?:-->|$)", re.DOTALL)
_MENTION_RE = re.compile(r"(?<![\w`/])@([A-Za-z0-9](?:[A-Za-z0-9-]{0,38})(?:/[A-Za-z0-9._-]+)?)")


def _to_ascii(match: re.Match) -> str:
    return chr(ord(match.group(0)) - 0xFEE0)


def harden_unicode(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = _ANSI_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    text = _INVISIBLE_RE.sub("", text)
    return _FULLWIDTH_RE.sub(_to_ascii, text)


def remove_html_comments(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _HTML_COMMENT_RE.sub("", text)
    return text


def _normalize_allowed(allowed_mentions: Iterable[str] | None) -> set[str]:
    return {name.lower().lstrip("@") for name in (allowed_mentions or ())}


def find_mentions(text: str) -> list[str]:
    """Return every unquoted @mention in ``text`` (without the ``@``), in order of appearance."""
    return [match.group(1) for match in _MENTION_RE.finditer(text)]


def find_unauthorized_mentions(text: str, allowed_mentions: Iterable[str] | None) -> list[str]:
    allowed = _normalize_allowed(allowed_mentions)
    if ALLOW_ALL_MENTIONS in allowed:
        return []
    seen: list[str] = []
    for name in find_mentions(text):
        if name.lower() not in allowed and name not in seen:
            seen.append(name)
    return seen


def neutralize_mentions(text: str, allowed_mentions: Iterable[str] | None) -> str:
    allowed = _normalize_allowed(allowed_mentions)
    if ALLOW_ALL_MENTIONS in allowed:
        return text

    def _wrap(match: re.Match) -> str:
        if match.group(1).lower() in allowed:
            return match.group(0)
        return f"`{match.group(0)}`"

    return _MENTION_RE.sub(_wrap, text)


def sanitize_content(text: str, allowed_mentions: Iterable[str] | None = None) -> str:
    """Return ``text`` made safe for posting to GitHub.

    ``allowed_mentions`` holds usernames (case-insensitive) that may be
    mentioned as-is; the special entry ``"*"`` allows every mention.
    """
    if not text:
        return text or ""
    text = harden_unicode(text)
    text = remove_html_comments(text)
    text = unicodedata.normalize("NFC", text)
    return neutralize_mentions(text, allowed_mentions)
