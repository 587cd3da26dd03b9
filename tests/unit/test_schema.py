"""Unit tests for JSON-Schema sanitization."""

import copy
import json
import logging

import pytest

from toolpatch.schema import (
    DEFAULT_KEYWORDS_TO_REMOVE,
    SchemaTransformConfig,
    find_unsupported_keywords,
    transform_request_tools,
    transform_schema,
)


@pytest.fixture
def config():
    return SchemaTransformConfig.default()


def _keys_anywhere(value) -> set[str]:
    if isinstance(value, list):
        return set().union(*(_keys_anywhere(v) for v in value)) if value else set()
    if isinstance(value, dict):
        keys = set(value)
        for v in value.values():
            keys |= _keys_anywhere(v)
        return keys
    return set()


NESTED_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "$id": "urn:tool",
    "type": "object",
    "properties": {
        "mode": {"const": "fast", "description": "only mode"},
        "tags": {
            "type": "object",
            "propertyNames": {"pattern": "^[a-z]+$"},
            "patternProperties": {"^x-": {"type": "string"}},
        },
        "nested": {
            "type": "array",
            "items": {
                "anyOf": [
                    {"$ref": "#/definitions/Thing"},
                    {"type": "object", "properties": {"kind": {"const": 3}}},
                ],
            },
        },
    },
    "if": {"properties": {"mode": {"const": "fast"}}},
    "then": {"required": ["tags"]},
    "else": {"required": []},
    "not": {"required": ["forbidden"]},
    "dependencies": {"a": ["b"]},
    "$comment": "generated",
    "required": ["mode"],
}


# ---------------------------------------------------------------------------
# transform_schema
# ---------------------------------------------------------------------------

class TestTransformSchema:
    @pytest.mark.parametrize("value", [None, 1, 2.5, True, "text"])
    def test_primitives_unchanged(self, config, value):
        assert transform_schema(value, config) == value

    def test_array_order_preserved(self, config):
        schema = [{"const": 1}, {"type": "string"}, 3]
        assert transform_schema(schema, config) == [
            {"enum": [1]}, {"type": "string"}, 3,
        ]

    def test_removes_default_keywords_at_every_depth(self, config):
        result = transform_schema(NESTED_SCHEMA, config)
        assert not (_keys_anywhere(result) & DEFAULT_KEYWORDS_TO_REMOVE)

    def test_const_becomes_single_value_enum(self, config):
        result = transform_schema(NESTED_SCHEMA, config)
        assert result["properties"]["mode"] == {
            "enum": ["fast"], "description": "only mode",
        }
        kind = result["properties"]["nested"]["items"]["anyOf"][1]
        assert kind["properties"]["kind"] == {"enum": [3]}
        assert "const" not in _keys_anywhere(result)

    def test_unresolved_ref_is_dropped_not_followed(self, config):
        result = transform_schema(NESTED_SCHEMA, config)
        assert result["properties"]["nested"]["items"]["anyOf"][0] == {}

    def test_does_not_mutate_input(self, config):
        original = copy.deepcopy(NESTED_SCHEMA)
        transform_schema(NESTED_SCHEMA, config)
        assert NESTED_SCHEMA == original

    def test_idempotent(self, config):
        once = transform_schema(NESTED_SCHEMA, config)
        assert transform_schema(once, config) == once

    def test_const_of_object_is_sanitized_too(self, config):
        result = transform_schema({"const": {"const": 1, "not": {}}}, config)
        assert result == {"enum": [{"enum": [1]}]}
        assert transform_schema(result, config) == result

    def test_keeps_supported_keywords(self, config):
        schema = {
            "type": "object",
            "properties": {"n": {"type": "integer", "minimum": 0}},
            "required": ["n"],
            "additionalProperties": False,
        }
        assert transform_schema(schema, config) == schema


class TestSchemaTransformConfig:
    def test_extend_adds_removals(self):
        config = SchemaTransformConfig.default().extend(remove=["format"])
        result = transform_schema(
            {"type": "string", "format": "uri", "$id": "x"}, config,
        )
        assert result == {"type": "string"}

    def test_extend_adds_transform_that_expands_to_many_keys(self):
        config = SchemaTransformConfig.default().extend(transforms={
            "exclusiveMinimum": lambda v: {"minimum": v, "description": f"> {v}"},
        })
        result = transform_schema(
            {"type": "number", "exclusiveMinimum": 0}, config,
        )
        assert result == {
            "type": "number", "minimum": 0, "description": "> 0",
        }

    def test_caller_transform_overrides_default(self):
        config = SchemaTransformConfig.default().extend(transforms={
            "const": lambda v: {"enum": [v], "default": v},
        })
        assert transform_schema({"const": "a"}, config) == {
            "enum": ["a"], "default": "a",
        }

    def test_extend_leaves_original_untouched(self):
        base = SchemaTransformConfig.default()
        base.extend(remove=["format"])
        assert "format" not in base.keywords_to_remove


# ---------------------------------------------------------------------------
# transform_request_tools
# ---------------------------------------------------------------------------

class TestTransformRequestTools:
    def _body(self, **extra):
        return json.dumps({"model": "m", "messages": [], **extra})

    def test_no_tools_returns_same_object(self, config):
        body = self._body()
        assert transform_request_tools(body, config) is body

    def test_empty_tools_returns_same_object(self, config):
        body = self._body(tools=[])
        assert transform_request_tools(body, config) is body

    def test_invalid_json_returned_unchanged(self, config):
        body = "{not json"
        assert transform_request_tools(body, config) is body

    def test_non_object_body_returned_unchanged(self, config):
        body = "[1, 2, 3]"
        assert transform_request_tools(body, config) is body

    def test_transform_error_returned_unchanged(self):
        def broken(value):
            raise RuntimeError("boom")

        config = SchemaTransformConfig.default().extend(
            transforms={"const": broken},
        )
        body = self._body(tools=[{"function": {"parameters": {"const": 1}}}])
        assert transform_request_tools(body, config) is body

    def test_sanitizes_tool_parameters(self, config):
        body = self._body(tools=[{
            "type": "function",
            "function": {
                "name": "set_mode",
                "parameters": {
                    "type": "object",
                    "properties": {"mode": {"const": "fast"}},
                    "propertyNames": {"pattern": "^m"},
                },
            },
        }])
        result = json.loads(transform_request_tools(body, config))
        assert result["tools"][0]["function"]["parameters"] == {
            "type": "object",
            "properties": {"mode": {"enum": ["fast"]}},
        }
        assert result["model"] == "m"

    def test_only_tools_are_rewritten(self, config):
        body = self._body(
            tools=[{"function": {"parameters": {"type": "object"}}}],
            metadata={"not": "a schema", "const": 1},
        )
        result = json.loads(transform_request_tools(body, config))
        assert result["metadata"] == {"not": "a schema", "const": 1}

    def test_bytes_in_bytes_out(self, config):
        body = self._body(
            tools=[{"function": {"parameters": {"const": "é"}}}],
        ).encode("utf-8")
        result = transform_request_tools(body, config)
        assert isinstance(result, bytes)
        assert json.loads(result)["tools"][0]["function"]["parameters"] == {
            "enum": ["é"],
        }

    def test_input_schema_is_sanitized(self, config):
        body = self._body(tools=[{
            "name": "lookup",
            "input_schema": {"type": "object", "$schema": "x"},
        }])
        result = json.loads(transform_request_tools(body, config))
        assert result["tools"][0]["input_schema"] == {"type": "object"}

    def test_debug_logging_reports_clean_body(self, config, caplog):
        body = self._body(tools=[{"function": {"parameters": {"const": 1}}}])
        with caplog.at_level(logging.DEBUG, logger="toolpatch.schema"):
            transform_request_tools(body, config)
        assert "Removed all unsupported keywords" in caplog.text


class TestFindUnsupportedKeywords:
    def test_counts_remaining_keywords(self, config):
        text = '{"a":{"$ref":"x"},"b":{"$ref":"y"},"c":{"const":1}}'
        assert find_unsupported_keywords(text, config) == {
            "$ref": 2, "const": 1,
        }

    def test_clean_body_has_none(self, config):
        assert find_unsupported_keywords('{"type":"object"}', config) == {}
