"""Error codes and exception types shared across safeout.

Codes are short, stable strings. They prefix every message surfaced to the
agent so that calling tooling can pattern-match on them without parsing prose.
"""

from __future__ import annotations

E_PARSE = "E_PARSE"
E_MISSING_TYPE = "E_MISSING_TYPE"
E_UNKNOWN_TYPE = "E_UNKNOWN_TYPE"
E_MAX_EXCEEDED = "E_MAX_EXCEEDED"
E_MIN_NOT_MET = "E_MIN_NOT_MET"
E_VALIDATION = "E_VALIDATION"
E_LIMIT = "E_LIMIT"
E_MENTION = "E_MENTION"
E_REPO_NOT_ALLOWED = "E_REPO_NOT_ALLOWED"
E_INVALID_REPO = "E_INVALID_REPO"
E_TARGET = "E_TARGET"
E_TEMPORARY_ID = "E_TEMPORARY_ID"
E_REVIEW = "E_REVIEW"
E_API = "E_API"
E_CONFIG = "E_CONFIG"
E_MANIFEST = "E_MANIFEST"


class SafeOutputError(Exception):
    """Base class for all safeout errors.

    ``str(exc)`` always starts with the error code, e.g.
    ``"E_TARGET: Invalid add_comment target 'abc'"``.
    """

    code = E_VALIDATION

    def __init__(self, message: str, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code}: {message}")


class ConfigError(SafeOutputError):
    """Raised when configuration is malformed. Always batch-fatal."""

    code = E_CONFIG


class ParseError(SafeOutputError):
    """A line could not be parsed, even after the repair pass."""

    code = E_PARSE

    def __init__(self, original_error: str, repair_error: str):
        self.original_error = original_error
        self.repair_error = repair_error
        super().__init__(f"JSON parsing failed. Original: {original_error}. After attempted repair: {repair_error}")


class RepoNotAllowedError(SafeOutputError):
    code = E_REPO_NOT_ALLOWED


class InvalidRepoError(SafeOutputError):
    code = E_INVALID_REPO


class TargetResolutionError(SafeOutputError):
    code = E_TARGET


class TemporaryIdError(SafeOutputError):
    code = E_TEMPORARY_ID


class ReviewBufferError(SafeOutputError):
    code = E_REVIEW


class ManifestError(SafeOutputError):
    """The audit manifest could not be created or appended to."""

    code = E_MANIFEST


class UnsupportedTypeError(SafeOutputError):
    code = E_VALIDATION


class GitHubApiError(SafeOutputError):
    """A privileged call returned an unusable response."""

    code = E_API
