"""JSON-Schema sanitization for tool definitions.

Gemini's OpenAI-compatible endpoint rejects several JSON-Schema
keywords outright (``Unknown name 'propertyNames'``) and does not
understand ``const``.  :func:`transform_request_tools` rewrites the
``tools`` array of an outgoing request so that only the supported
vocabulary reaches the upstream.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from toolpatch.jsonpath import dumps, is_non_empty_list, safe_get

logger = logging.getLogger(__name__)

KeywordTransform = Callable[[Any], dict[str, Any]]

DEFAULT_KEYWORDS_TO_REMOVE = frozenset({
    "propertyNames",
    "patternProperties",
    "dependencies",
    "if", "then", "else",
    "not",
    "$ref", "$id", "$schema", "$comment",
})


def const_to_enum(value: Any) -> dict[str, Any]:
    return {"enum": [value]}


DEFAULT_KEYWORD_TRANSFORMS: Mapping[str, KeywordTransform] = MappingProxyType({
    "const": const_to_enum,
})


@dataclass(frozen=True)
class SchemaTransformConfig:
    """Which keywords to drop and which to rewrite.

    Built once per transport and shared by every request it sees.
    """

    keywords_to_remove: frozenset[str] = DEFAULT_KEYWORDS_TO_REMOVE
    keyword_transforms: Mapping[str, KeywordTransform] = field(
        default_factory=lambda: DEFAULT_KEYWORD_TRANSFORMS
    )

    @classmethod
    def default(cls) -> SchemaTransformConfig:
        return cls()

    def extend(
        self,
        remove: Iterable[str] = (),
        transforms: Mapping[str, KeywordTransform] | None = None,
    ) -> SchemaTransformConfig:
        """Return a new config with caller additions merged in.

        Caller transforms replace built-in transforms for the same
        keyword.
        """
        merged = dict(self.keyword_transforms)
        merged.update(transforms or {})
        return SchemaTransformConfig(
            keywords_to_remove=self.keywords_to_remove | frozenset(remove),
            keyword_transforms=MappingProxyType(merged),
        )


def transform_schema(schema: Any, config: SchemaTransformConfig) -> Any:
    """Return a sanitized copy of ``schema``.

    Primitives come back as-is, lists are mapped element-wise and dicts
    are rebuilt key by key.  The input is never mutated.  ``$ref`` is in
    the default removal set, so references are dropped rather than
    followed and cyclic definitions cannot cause unbounded recursion.
    """
    if isinstance(schema, list):
        return [transform_schema(item, config) for item in schema]
    if not isinstance(schema, dict):
        return schema

    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in config.keywords_to_remove:
            logger.debug(f"Removing unsupported keyword: {key}")
            continue
        transform = config.keyword_transforms.get(key)
        if transform is not None:
            replacement = transform(value)
            # Replacement values go through the same rules.
            for new_key, new_value in replacement.items():
                result[new_key] = transform_schema(new_value, config)
            logger.debug(f"Transformed keyword {key!r} to: {', '.join(replacement)}")
            continue
        if isinstance(value, (dict, list)):
            result[key] = transform_schema(value, config)
        else:
            result[key] = value
    return result


def transform_request_tools(
    body: str | bytes, config: SchemaTransformConfig
) -> str | bytes:
    """Sanitize the ``tools`` array of a serialized request body.

    Bodies without a non-empty ``tools`` list are returned untouched.
    Anything that cannot be parsed or rewritten also comes back as the
    original body; this function does not raise.
    """
    try:
        data = json.loads(body)
        tools = safe_get(data, "tools")
        if not is_non_empty_list(tools):
            logger.debug("No tools array found or empty, skipping transformation")
            return body
        data["tools"] = transform_schema(tools, config)
        transformed = dumps(data)
    except Exception as e:
        logger.debug(f"Failed to parse/transform request body: {e}")
        return body

    if logger.isEnabledFor(logging.DEBUG):
        remaining = find_unsupported_keywords(transformed, config)
        if remaining:
            summary = ", ".join(f"{k} ({n})" for k, n in remaining.items())
            logger.warning(f"Unsupported keywords still remain: {summary}")
        else:
            logger.debug("Removed all unsupported keywords from request body")

    if isinstance(body, bytes):
        return transformed.encode("utf-8")
    return transformed


def find_unsupported_keywords(
    serialized: str, config: SchemaTransformConfig
) -> dict[str, int]:
    """Count object keys in ``serialized`` that should have been removed.

    A plain textual scan, so string values that happen to look like
    ``"not":`` are counted as well.  Only meant for diagnostics.
    """
    counts: dict[str, int] = {}
    for keyword in sorted(config.keywords_to_remove | set(config.keyword_transforms)):
        found = len(re.findall(f'"{re.escape(keyword)}":', serialized))
        if found:
            counts[keyword] = found
    return counts
