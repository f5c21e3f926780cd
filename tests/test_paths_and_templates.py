"""Tests for path expressions, prompt templates and gate conditions."""

import pytest

from workflow_runner.core.conditions import evaluate_condition, parse_condition
from workflow_runner.core.exceptions import ConfigurationError, PathSyntaxError, UnresolvedPathError
from workflow_runner.core.paths import lookup_path, parse_path, resolve_mapping, resolve_path
from workflow_runner.core.prompts import (
    JSON_INSTRUCTION, build_template_variables, create_messages, parse_json_output, render_template,
    strip_code_fences
)


CONTEXT = {
    "input": {"interests": ["ai", "ml"], "limit": 5},
    "steps": {
        "discover": {
            "output": {
                "feeds": [
                    {"url": "https://a.example/feed", "title": "A"},
                    {"url": "https://b.example/feed", "title": "B"},
                ],
                "odd key": True,
            }
        }
    },
}


class TestParsePath:
    """Test cases for the path tokenizer."""

    def test_dotted_and_bracket_segments(self):
        assert parse_path("steps.discover.output.feeds[0].url") == [
            "steps", "discover", "output", "feeds", 0, "url"
        ]

    def test_quoted_keys(self):
        assert parse_path('steps["discover"].output[\'odd key\']') == [
            "steps", "discover", "output", "odd key"
        ]

    @pytest.mark.parametrize("expression", ["", "a.", "a..b", "a[", "a[x]", "a b", "a[\"b]"])
    def test_malformed_expressions_raise(self, expression):
        with pytest.raises(PathSyntaxError):
            parse_path(expression)

    def test_syntax_errors_are_configuration_errors(self):
        with pytest.raises(ConfigurationError):
            parse_path("a[")


class TestResolvePath:
    """Test cases for path evaluation."""

    def test_resolves_nested_values(self):
        assert resolve_path(CONTEXT, "steps.discover.output.feeds[1].title") == "B"
        assert resolve_path(CONTEXT, "input.interests.0") == "ai"

    def test_digit_segment_indexes_lists(self):
        assert resolve_path(CONTEXT, "steps.discover.output.feeds.0.url") == "https://a.example/feed"

    def test_missing_segment_raises(self):
        with pytest.raises(UnresolvedPathError) as exc_info:
            resolve_path(CONTEXT, "steps.summarize.output")
        assert exc_info.value.error_type.value == "configuration"

    def test_index_out_of_range_raises(self):
        with pytest.raises(UnresolvedPathError):
            resolve_path(CONTEXT, "input.interests[5]")

    def test_lookup_reports_misses_without_raising(self):
        assert lookup_path(CONTEXT, "input.limit") == (True, 5)
        assert lookup_path(CONTEXT, "input.missing") == (False, None)

    def test_present_none_is_found(self):
        assert lookup_path({"a": None}, "a") == (True, None)

    def test_resolve_mapping(self):
        mapping = {"feeds": "steps.discover.output.feeds", "limit": "input.limit"}
        resolved = resolve_mapping(mapping, CONTEXT)
        assert resolved["limit"] == 5
        assert len(resolved["feeds"]) == 2


class TestRenderTemplate:
    """Test cases for prompt template rendering."""

    def test_substitutes_scalars_and_json(self):
        variables = {"name": "Ada", "tags": ["x"], "ok": True, "none": None, "count": 3}
        rendered = render_template("{{name}} {{ count }} {{ok}} [{{none}}]\n{{tags}}", variables)
        assert rendered == 'Ada 3 true []\n[\n  "x"\n]'

    def test_unresolved_placeholders_are_left_intact(self):
        assert render_template("Hi {{ who }}", {}) == "Hi {{ who }}"

    def test_invalid_placeholders_are_left_intact(self):
        assert render_template("{{ a b }}", {"a": 1}) == "{{ a b }}"

    def test_empty_template(self):
        assert render_template(None, {"a": 1}) == ""

    def test_variables_include_context_and_input_keys(self):
        variables = build_template_variables(CONTEXT, {"topic": "ai"})
        assert render_template("{{topic}}/{{input.topic}}/{{steps.discover.output.feeds[0].title}}", variables) == "ai/ai/A"


class TestMessagesAndJsonOutput:
    """Test cases for chat message assembly and JSON parsing."""

    def test_create_messages_skips_empty_prompts(self):
        assert create_messages("", "hello") == [{"role": "user", "content": "hello"}]

    def test_json_instruction_is_appended_to_system(self):
        messages = create_messages("Be brief.", "hi", json_output=True)
        assert messages[0]["role"] == "system"
        assert messages[0]["content"].endswith(JSON_INSTRUCTION)

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_parse_plain_and_fenced_json(self):
        assert parse_json_output('{"a": 1}') == {"a": 1}
        assert parse_json_output('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_extracts_object_from_surrounding_text(self):
        assert parse_json_output('Sure! {"feeds": []} Hope that helps.') == {"feeds": []}

    def test_unparseable_output_is_wrapped(self):
        parsed = parse_json_output("not json at all")
        assert parsed["raw"] == "not json at all"
        assert "parse_error" in parsed


class TestConditions:
    """Test cases for gate conditions."""

    def test_len_comparison(self):
        assert evaluate_condition("len(feeds) >= 3", {"feeds": [1, 2]}) == (False, 2)
        assert evaluate_condition("len(feeds) >= 2", {"feeds": [1, 2]}) == (True, 2)

    def test_equality_with_string_literals(self):
        assert evaluate_condition("status == 'ok'", {"status": "ok"}) == (True, "ok")
        assert evaluate_condition('status != "ok"', {"status": "ok"}) == (False, "ok")

    def test_truthiness_and_negation(self):
        assert evaluate_condition("approved", {"approved": True}) == (True, True)
        assert evaluate_condition("not approved", {"approved": True}) == (False, True)

    def test_missing_path_fails_with_none(self):
        assert evaluate_condition("len(feeds) >= 1", {}) == (False, None)

    def test_len_of_number_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            evaluate_condition("len(count) > 1", {"count": 4})

    def test_incomparable_types_are_configuration_errors(self):
        with pytest.raises(ConfigurationError):
            evaluate_condition("name > 3", {"name": "abc"})

    def test_invalid_condition_raises(self):
        with pytest.raises(ConfigurationError):
            parse_condition("len(feeds) >=")
        with pytest.raises(ConfigurationError):
            parse_condition("score > bogus")

    def test_parsed_condition_fields(self):
        condition = parse_condition("not len(steps.a.output.feeds) < 2")
        assert condition.path == "steps.a.output.feeds"
        assert condition.use_len and condition.negate
        assert (condition.operator, condition.literal) == ("<", 2)
