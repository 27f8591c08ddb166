"""
Tests for JSON extraction and the two repair passes.

The scanner is shared, so extraction and repair must agree on string
boundaries: braces and quotes inside strings never count.
"""

import json

import pytest

from structgen.errors import ParseError
from structgen.json_text import (
    ScanState,
    drop_invalid_escapes,
    escape_raw_newlines,
    extract_json_object,
    parse_json_text,
    scan,
    strip_code_fences,
)


class TestScanner:
    def test_states_track_strings_and_escapes(self) -> None:
        states = [s for _, _, s in scan(r'{"a\"b"}')]
        assert states == [
            ScanState.OUTSIDE,    # {
            ScanState.OUTSIDE,    # "
            ScanState.IN_STRING,  # a
            ScanState.IN_STRING,  # \
            ScanState.ESCAPED,    # "
            ScanState.IN_STRING,  # b
            ScanState.IN_STRING,  # "
            ScanState.OUTSIDE,    # }
        ]


class TestFenceStripping:
    def test_json_tagged_fence(self) -> None:
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_untagged_fence_with_prose(self) -> None:
        text = 'Here you go:\n```\n{"a": 1}\n```\nHope this helps!'
        assert strip_code_fences(text) == '{"a": 1}'

    def test_uppercase_tag(self) -> None:
        assert strip_code_fences('```JSON\n{"a": 1}```') == '{"a": 1}'

    def test_no_fence_returns_trimmed(self) -> None:
        assert strip_code_fences('  {"a": 1}\n') == '{"a": 1}'


class TestExtraction:
    def test_object_in_fence_with_surrounding_prose(self) -> None:
        obj = '{"title": "Quiz", "questions": [{"id": "q1", "options": ["a", "b"]}]}'
        text = f"Sure! Here is the quiz.\n```json\n{obj}\n```\nLet me know if you need more."
        assert extract_json_object(text) == obj

    def test_trailing_commentary_is_ignored(self) -> None:
        assert extract_json_object('{"a": 1} and then {"b": 2}') == '{"a": 1}'

    def test_leading_prose_without_fence(self) -> None:
        assert extract_json_object('Result: {"a": {"b": 2}} done') == '{"a": {"b": 2}}'

    def test_braces_inside_strings_do_not_count(self) -> None:
        obj = '{"code": "if (x) { return \\"}\\"; }", "n": 1}'
        assert extract_json_object(obj + " trailing }") == obj

    def test_no_open_brace(self) -> None:
        assert extract_json_object("no json here") is None

    def test_unbalanced_returns_none(self) -> None:
        assert extract_json_object('{"a": {"b": 1}') is None


class TestNewlineRepair:
    def test_newline_inside_string_is_escaped(self) -> None:
        assert escape_raw_newlines('{"a": "line1\nline2"}') == '{"a": "line1\\nline2"}'

    def test_carriage_return_inside_string_is_dropped(self) -> None:
        assert escape_raw_newlines('{"a": "x\r\ny"}') == '{"a": "x\\ny"}'

    def test_newlines_outside_strings_untouched(self) -> None:
        text = '{\n  "a": 1,\r\n  "b": 2\n}'
        assert escape_raw_newlines(text) == text

    def test_idempotent(self) -> None:
        once = escape_raw_newlines('{"a": "x\ny\n", "b": "\\n"}')
        assert escape_raw_newlines(once) == once

    def test_valid_json_unchanged(self) -> None:
        text = json.dumps({"a": "multi\nline", "b": [1, 2, {"c": "\\"}]}, indent=2)
        assert escape_raw_newlines(text) == text


class TestInvalidEscapeRepair:
    def test_stray_backslash_before_quote_char_is_dropped(self) -> None:
        assert drop_invalid_escapes(r'{"a":"bad\'quote"}') == '{"a":"bad\'quote"}'

    def test_valid_escapes_kept(self) -> None:
        text = r'{"a": "q\" b\\ s\/ \b\f\n\r\t \u00e9"}'
        assert drop_invalid_escapes(text) == text

    def test_latex_style_escape(self) -> None:
        assert json.loads(drop_invalid_escapes(r'{"f": "\alpha + \beta"}')) == {"f": "alpha + \beta"}

    def test_backslashes_outside_strings_untouched(self) -> None:
        assert drop_invalid_escapes("{\\q}") == "{\\q}"

    def test_idempotent(self) -> None:
        once = drop_invalid_escapes(r'{"a": "x\q \\\q \$"}')
        assert drop_invalid_escapes(once) == once

    def test_valid_json_unchanged(self) -> None:
        text = json.dumps({"path": "C:\\temp\\new", "q": 'say "hi"'})
        assert drop_invalid_escapes(text) == text


class TestParseChain:
    def test_direct(self) -> None:
        parsed = parse_json_text('{"a": 1}')
        assert parsed.value == {"a": 1}
        assert parsed.stage == "direct"

    def test_fenced_object_with_newline_between_members(self) -> None:
        parsed = parse_json_text('```json\n{"a":1,\n"b":"x"}\n```')
        assert parsed.value == {"a": 1, "b": "x"}

    def test_raw_newline_in_string_fixed_by_first_pass(self) -> None:
        parsed = parse_json_text('```json\n{"a":1,"b":"x\ny"}\n```')
        assert parsed.value == {"a": 1, "b": "x\ny"}
        assert parsed.stage == "newline-repair"

    def test_invalid_escape_fixed_by_second_pass(self) -> None:
        parsed = parse_json_text(r'{"a":"bad\'quote"}')
        assert parsed.value == {"a": "bad'quote"}
        assert parsed.stage == "escape-repair"

    def test_both_passes_combined(self) -> None:
        parsed = parse_json_text('Answer:\n{"a": "one\ntwo \\q"}')
        assert parsed.value == {"a": "one\ntwo q"}
        assert parsed.stage == "escape-repair"

    def test_unrecoverable_raises(self) -> None:
        with pytest.raises(ParseError) as info:
            parse_json_text('{"a": [1, 2,, }')
        assert info.value.stage == "escape-repair"

    def test_empty_output_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_json_text("   ")

    def test_truncated_output_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_json_text('```json\n{"questions": [{"id": "q1", "question": "What')

    def test_pathologically_deep_nesting_raises_parse_error(self) -> None:
        depth = 100_000
        with pytest.raises(ParseError, match="nesting too deep"):
            parse_json_text('{"a":' * depth + "1" + "}" * depth)
