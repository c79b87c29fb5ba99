"""Tests for edit-set extraction from agent responses."""

import json

import pytest

from devloop.extractor import (
    MAX_UNWRAP_DEPTH,
    RAW_FALLBACK_PATH,
    extract,
    find_json_objects,
    repair_truncated_json,
    unescape_content,
    unwrap_result,
    validate_edit_set,
)
from devloop.models import EditSet, FileEdit


def make_edit_set_dict(summary: str = "add module") -> dict:
    return {
        "files": [
            {"path": "pkg/mod.py", "operation": "create", "content": "x = 1\n"},
        ],
        "summary": summary,
    }


def wrap(value, layers: int) -> dict:
    for _ in range(layers):
        value = {"type": "result", "result": value}
    return value


class TestDirectAndNested:
    """Tests for already-structured input."""

    def test_edit_set_instance_returned_unchanged(self):
        """An EditSet passes through as the same object."""
        edit_set = EditSet(
            files=(FileEdit(path="a.py", operation="delete"),), summary="remove a"
        )

        result = extract(edit_set)

        assert result.valid is True
        assert result.edit_set is edit_set
        assert result.strategy_used == "direct-object"

    def test_decoded_dict_uses_direct_object(self):
        """A decoded dict with a files array is validated directly."""
        result = extract(make_edit_set_dict())

        assert result.valid is True
        assert result.strategy_used == "direct-object"
        assert result.edit_set.files[0].path == "pkg/mod.py"
        assert result.edit_set.files[0].content == "x = 1\n"

    @pytest.mark.parametrize("layers", [1, 2, 3, 4, 5])
    def test_nested_result_envelopes_unwrapped(self, layers):
        """Up to five result envelopes are peeled off."""
        result = extract(wrap(make_edit_set_dict(), layers))

        assert result.valid is True
        assert result.strategy_used == "nested-result"
        assert result.edit_set.summary == "add module"

    def test_string_layers_are_decoded_while_unwrapping(self):
        """An envelope whose result is a JSON string is decoded."""
        inner = json.dumps(wrap(make_edit_set_dict(), 1))
        result = extract({"type": "result", "result": inner})

        assert result.valid is True
        assert result.edit_set.files[0].operation == "create"

    def test_unwrap_result_stops_at_max_depth(self):
        """unwrap_result removes at most MAX_UNWRAP_DEPTH layers."""
        value, depth = unwrap_result(wrap(make_edit_set_dict(), MAX_UNWRAP_DEPTH + 1))

        assert depth == MAX_UNWRAP_DEPTH
        assert "result" in value

    def test_unwrap_result_leaves_plain_values(self):
        """Values without an envelope report zero depth."""
        value, depth = unwrap_result("just text")

        assert depth == 0
        assert value == "just text"


class TestTextStrategies:
    """Tests for string responses."""

    def test_bare_json_is_schema_validated(self):
        """A response that is exactly the JSON object parses as-is."""
        result = extract(json.dumps(make_edit_set_dict()))

        assert result.valid is True
        assert result.strategy_used == "schema-validated"

    def test_fenced_block_with_narration(self):
        """A fenced json block surrounded by prose is found."""
        text = (
            "Here are the changes:\n\n```json\n"
            + json.dumps(make_edit_set_dict(), indent=2)
            + "\n```\n\nLet me know if you need anything else."
        )

        result = extract(text)

        assert result.valid is True
        assert result.edit_set.files[0].path == "pkg/mod.py"

    def test_fenced_block_with_trailing_comma_is_cleaned(self):
        """A trailing comma inside a fenced block is removed."""
        body = json.dumps(make_edit_set_dict())[:-1] + ",}"
        text = f"Done.\n```json\n{body}\n```"

        result = extract(text)

        assert result.valid is True
        assert result.strategy_used == "markdown-block"

    def test_unterminated_fence_is_used(self):
        """A fence that is never closed still yields its object."""
        text = "Working on it\n```json\n" + json.dumps(make_edit_set_dict())

        result = extract(text)

        assert result.valid is True
        assert result.strategy_used == "markdown-block"

    def test_object_embedded_in_prose(self):
        """A bare object inside prose is found by brace scanning."""
        text = f"I made these changes {json.dumps(make_edit_set_dict())} hope that helps"

        result = extract(text)

        assert result.valid is True
        assert result.strategy_used == "balanced-brace"

    def test_last_object_preferred(self):
        """When several objects contain files, the last one wins."""
        first = json.dumps(make_edit_set_dict("first draft"))
        second = json.dumps(make_edit_set_dict("final"))

        result = extract(f"Draft: {first}\nCorrected: {second}")

        assert result.valid is True
        assert result.edit_set.summary == "final"

    def test_double_escaped_response(self):
        """A response escaped one level too many is unescaped first."""
        escaped = json.dumps(json.dumps(make_edit_set_dict()))[1:-1]
        assert '\\"files\\"' in escaped

        result = extract(escaped)

        assert result.valid is True
        assert result.edit_set.files[0].content == "x = 1\n"


class TestTruncationRepair:
    """Tests for responses cut off mid-object."""

    @pytest.mark.parametrize("cut", [1, 2, 3])
    def test_truncated_tail_is_repaired(self, cut):
        """Closing quotes and brackets recovers a cut-off object."""
        text = json.dumps(make_edit_set_dict("add module"))[:-cut]

        result = extract(text)

        assert result.valid is True
        assert result.strategy_used == "truncation-repair"
        assert result.edit_set.files[0].path == "pkg/mod.py"
        assert "Response was truncated and has been repaired" in result.warnings

    def test_unfinished_trailing_file_is_dropped(self):
        """A half-written last file is cut back to the previous element."""
        data = {
            "summary": "two files",
            "files": [
                {"path": "a.py", "operation": "create", "content": "a = 1\n"},
                {"path": "b.py", "operation": "create", "content": "b = 2\n"},
            ],
        }
        text = json.dumps(data)
        text = text[: text.index('"operation": "create", "content": "b')] + '"op'

        result = extract(text)

        assert result.valid is True
        assert [f.path for f in result.edit_set.files] == ["a.py"]

    def test_repair_truncated_json_closes_brackets(self):
        """repair_truncated_json appends the missing closers."""
        assert json.loads(repair_truncated_json('{"a": [1, 2')) == {"a": [1, 2]}

    def test_repair_truncated_json_handles_dangling_key(self):
        """A key without a value gets null."""
        assert json.loads(repair_truncated_json('{"a":')) == {"a": None}

    def test_repair_truncated_json_drops_trailing_comma(self):
        """A trailing comma before the cut is removed."""
        assert json.loads(repair_truncated_json('{"a": 1,')) == {"a": 1}


class TestFallback:
    """Tests for responses with nothing usable."""

    def test_prose_becomes_raw_fallback(self):
        """Text without JSON is wrapped for manual review and is not valid."""
        result = extract("I could not complete the task.")

        assert result.valid is False
        assert result.is_raw_fallback is True
        assert result.edit_set.files[0].path == RAW_FALLBACK_PATH
        assert result.edit_set.files[0].content == "I could not complete the task."
        assert result.strategies_tried[-1] == "raw-fallback"

    @pytest.mark.parametrize("raw", ["", "   \n", None])
    def test_empty_response(self, raw):
        """Empty input yields no edit-set at all."""
        result = extract(raw)

        assert result.valid is False
        assert result.edit_set is None
        assert result.errors == ["Empty response"]

    def test_validation_errors_are_reported(self):
        """Errors from a structurally broken object are kept."""
        text = json.dumps({"files": [{"operation": "create", "content": "x"}], "summary": "s"})

        result = extract(text)

        assert result.valid is False
        assert 'files[0]: missing required field "path"' in result.errors


class TestExtractIdempotence:
    """Re-extracting a result gives the same edit-set."""

    def test_extract_of_extracted_edit_set(self):
        """Feeding the output back in is a no-op."""
        first = extract(json.dumps(make_edit_set_dict()))
        second = extract(first.edit_set)

        assert second.edit_set == first.edit_set

    def test_extract_of_serialized_edit_set(self):
        """Serializing and re-extracting preserves the edit-set."""
        first = extract("```json\n" + json.dumps(make_edit_set_dict()) + "\n```")
        second = extract(json.dumps(first.edit_set.to_dict()))

        assert second.edit_set == first.edit_set


class TestValidateEditSet:
    """Tests for validate_edit_set()."""

    def test_missing_files_and_summary(self):
        """Both top-level fields are required."""
        edit_set, errors, _ = validate_edit_set({})

        assert edit_set is None
        assert 'missing required field "files"' in errors
        assert 'missing required field "summary"' in errors

    def test_invalid_operation(self):
        """Operations outside the four known ones are rejected."""
        _, errors, _ = validate_edit_set(
            {"files": [{"path": "a.py", "operation": "move"}], "summary": "s"}
        )

        assert errors == [
            'files[0]: invalid operation "move" (expected create, update, delete, patch)'
        ]

    def test_create_requires_content(self):
        """create without content is an error."""
        _, errors, _ = validate_edit_set(
            {"files": [{"path": "a.py", "operation": "create"}], "summary": "s"}
        )

        assert errors == ['files[0]: operation "create" requires non-empty "content"']

    def test_patch_requires_patches(self):
        """patch without a patches array is an error."""
        _, errors, _ = validate_edit_set(
            {"files": [{"path": "a.py", "operation": "patch"}], "summary": "s"}
        )

        assert errors == [
            'files[0]: operation "patch" requires a non-empty "patches" array'
        ]

    def test_patch_is_parsed(self):
        """Patches become Patch values on the FileEdit."""
        edit_set, errors, _ = validate_edit_set(
            {
                "files": [
                    {
                        "path": "a.py",
                        "operation": "patch",
                        "patches": [{"search": "x = 1", "replace": "x = 2"}],
                    }
                ],
                "summary": "bump",
            }
        )

        assert errors == []
        assert edit_set.files[0].patches[0].replace == "x = 2"

    def test_warnings_do_not_fail_validation(self):
        """Unknown keys and an empty summary are only warnings."""
        edit_set, errors, warnings = validate_edit_set(
            {"files": [], "summary": "", "notes": "extra"}
        )

        assert edit_set is not None
        assert edit_set.is_empty
        assert errors == []
        assert "summary is empty" in warnings
        assert 'unexpected property "notes"' in warnings

    def test_non_object_rejected(self):
        """A JSON array is not an edit-set."""
        edit_set, errors, _ = validate_edit_set([1, 2])

        assert edit_set is None
        assert errors == ["Response must be a JSON object"]


class TestHelpers:
    """Tests for scanning and unescaping helpers."""

    def test_find_json_objects_ignores_braces_in_strings(self):
        """Braces inside string literals do not affect depth."""
        spans, open_start = find_json_objects('x {"a": "}"} y')

        assert spans == ['{"a": "}"}']
        assert open_start is None

    def test_find_json_objects_reports_unterminated_object(self):
        """An object that never closes is reported by its start index."""
        spans, open_start = find_json_objects('x {"a": 1')

        assert spans == []
        assert open_start == 2

    def test_unescape_content_with_literal_newlines(self):
        """Content with several literal \\n and no real newline is unescaped."""
        assert unescape_content("a\\nb\\nc") == "a\nb\nc"

    def test_unescape_content_keeps_single_escape(self):
        """A single literal \\n is left alone."""
        assert unescape_content('print("a\\nb")') == 'print("a\\nb")'

    def test_unescape_content_keeps_real_newlines(self):
        """Content that already has newlines is left alone."""
        content = "a = '\\n'\nb = '\\n'\n"
        assert unescape_content(content) == content
