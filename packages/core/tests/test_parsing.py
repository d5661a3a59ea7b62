"""Tests for line parsing and the JSON repair pass."""

import pytest

from safeout_core.errors import ParseError, SafeOutputError
from safeout_core.parsing import (
    MAX_NESTING_DEPTH,
    parse_json_with_repair,
    parse_line,
    repair_json,
    strip_dangerous_keys,
)


# ---------------------------------------------------------------------------
# parse_json_with_repair
# ---------------------------------------------------------------------------


class TestParseJsonWithRepair:
    def test_valid_json_parsed_as_is(self):
        assert parse_json_with_repair('{"type": "noop", "message": "hi"}') == {"type": "noop", "message": "hi"}

    def test_single_quotes_repaired(self):
        assert parse_json_with_repair("{'type': 'noop', 'message': 'hi'}") == {"type": "noop", "message": "hi"}

    def test_bare_keys_repaired(self):
        assert parse_json_with_repair('{type: "noop", message: "hi"}') == {"type": "noop", "message": "hi"}

    def test_trailing_comma_removed(self):
        assert parse_json_with_repair('{"type": "add_labels", "labels": ["bug",],}') == {
            "type": "add_labels",
            "labels": ["bug"],
        }

    def test_missing_closing_brace_added(self):
        assert parse_json_with_repair('{"type": "noop", "message": "hi"') == {"type": "noop", "message": "hi"}

    def test_python_literals_mapped(self):
        parsed = parse_json_with_repair("{'type': 'create_pull_request', 'draft': True, 'labels': None}")
        assert parsed["draft"] is True
        assert parsed["labels"] is None

    def test_code_fence_stripped(self):
        assert parse_json_with_repair('```json\n{"type": "noop"}\n```') == {"type": "noop"}

    def test_raw_tab_inside_string_escaped(self):
        assert parse_json_with_repair('{"message": "a\tb"}') == {"message": "a\tb"}

    def test_repair_does_not_touch_string_contents(self):
        parsed = parse_json_with_repair("{'type': 'noop', 'message': 'keep {a: 1,} True'}")
        assert parsed["message"] == "keep {a: 1,} True"

    def test_escaped_single_quote_in_single_quoted_string(self):
        assert parse_json_with_repair("{'message': 'it\\'s fine'}") == {"message": "it's fine"}

    def test_nan_rejected(self):
        with pytest.raises(ParseError):
            parse_json_with_repair('{"type": "noop", "n": NaN}')

    def test_unrepairable_raises_with_both_errors(self):
        with pytest.raises(ParseError) as exc_info:
            parse_json_with_repair("not json at all")
        assert exc_info.value.code == "E_PARSE"
        assert "Original:" in str(exc_info.value)
        assert "After attempted repair:" in str(exc_info.value)

    def test_dangerous_keys_removed(self):
        parsed = parse_json_with_repair('{"type": "noop", "__proto__": {"x": 1}, "nested": {"constructor": 1, "ok": 2}}')
        assert parsed == {"type": "noop", "nested": {"ok": 2}}


# ---------------------------------------------------------------------------
# repair_json / strip_dangerous_keys
# ---------------------------------------------------------------------------


class TestRepairJson:
    def test_closes_nested_brackets_in_order(self):
        assert repair_json('{"labels": ["a", "b"') == '{"labels": ["a", "b"]}'

    def test_drops_dangling_comma_before_closing(self):
        assert repair_json('{"a": 1,') == '{"a": 1}'


class TestStripDangerousKeys:
    def test_removes_dunder_keys_at_every_depth(self):
        value = {"a": [{"__class__": 1, "b": 2}], "prototype": {}}
        assert strip_dangerous_keys(value) == {"a": [{"b": 2}]}

    def test_scalars_untouched(self):
        assert strip_dangerous_keys("text") == "text"
        assert strip_dangerous_keys(5) == 5

    def test_returns_copy(self):
        inner = {"b": [1, 2]}
        value = {"a": inner}
        result = strip_dangerous_keys(value)
        result["a"]["b"].append(3)
        assert inner == {"b": [1, 2]}

    def test_moderate_nesting_kept(self):
        value = {"a": [[[{"b": [[1]]}]]]}
        assert strip_dangerous_keys(value) == value

    def test_excessive_nesting_rejected(self):
        value = {"a": [[]]}
        for _ in range(MAX_NESTING_DEPTH):
            value = {"a": value}
        with pytest.raises(SafeOutputError, match="E_PARSE: Record nesting exceeds"):
            strip_dangerous_keys(value)


# ---------------------------------------------------------------------------
# parse_line
# ---------------------------------------------------------------------------


class TestParseLine:
    def test_returns_record_and_no_error(self):
        record, error = parse_line('{"type": "noop"}', 1)
        assert record == {"type": "noop"}
        assert error is None

    def test_error_names_line_number(self):
        record, error = parse_line("{{{ nope", 7)
        assert record is None
        assert error.startswith("Line 7: Invalid JSON - E_PARSE: JSON parsing failed. Original: ")

    def test_deeply_nested_line_is_a_line_error(self):
        line = '{"type": "noop", "message": "x", "a": ' + "[" * 200 + "]" * 200 + "}"
        record, error = parse_line(line, 3)
        assert record is None
        assert error.startswith("Line 3: E_PARSE: ")
