"""Streaming primitives for tool-call fragments.

Upstreams that are only loosely OpenAI-compatible stream tool calls
without an ``index`` (or with ``index`` as a string).  The SSE pipeline
calls :func:`ensure_tool_call_index` on every fragment so that clients
can rely on a stable, numeric index per logical call.

On the consuming side, :class:`ToolCallAccumulator` reassembles tool
calls whose arguments arrive in fragments across multiple chunks.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from toolpatch.jsonpath import is_non_empty_str, is_plain_object, safe_get

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass
class ChoiceIndexState:
    """Index bookkeeping for one choice of one stream."""

    next_index: int = 0
    assigned: dict[str, int] = field(default_factory=dict)


def tool_call_key(call: Any) -> str | None:
    """Stable identity of a logical tool call, if it has one.

    Prefers the call id; falls back to the function name, prefixed so
    it cannot collide with a raw id.
    """
    if not is_plain_object(call):
        return None
    call_id = safe_get(call, "id")
    if is_non_empty_str(call_id):
        return call_id
    name = safe_get(call, "function", "name")
    if is_non_empty_str(name):
        return f"fn:{name}"
    return None


def _is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _parse_index(raw: str) -> int | None:
    match = _LEADING_INT.match(raw)
    if match is None:
        return None
    return int(match.group(1))


def ensure_tool_call_index(state: ChoiceIndexState, call: dict[str, Any]) -> bool:
    """Give ``call`` a numeric index that is stable for its key.

    Mutates ``call`` in place and returns whether it changed.
    """
    mutated = False
    key = tool_call_key(call)

    if isinstance(call.get("index"), str):
        parsed = _parse_index(call["index"])
        if parsed is not None:
            logger.debug(f"Converting string index to number: {call['index']!r} -> {parsed}")
            call["index"] = parsed
            mutated = True
        else:
            logger.debug(f"Invalid string index {call['index']!r}, will assign new index")
            del call["index"]

    index = call.get("index")
    if _is_finite_number(index):
        state.next_index = max(state.next_index, math.floor(index) + 1)
        if key:
            state.assigned[key] = index
        return mutated

    if key and key in state.assigned:
        call["index"] = state.assigned[key]
        logger.debug(f"Assigned index from key: {key} -> {call['index']}")
        return True

    index = state.next_index
    state.next_index += 1
    call["index"] = index
    if key:
        state.assigned[key] = index
    logger.debug(f"Assigned new index: {index} for key: {key}")
    return True


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None

    @classmethod
    def from_delta(cls, call: Any) -> ToolCallFragment:
        """Build from an SDK ``delta.tool_calls`` entry."""
        function = getattr(call, "function", None)
        return cls(
            index=call.index,
            call_id=getattr(call, "id", None),
            name=getattr(function, "name", None),
            arguments_delta=getattr(function, "arguments", None),
        )


@dataclass
class StreamChunk:
    """One ``chat.completion.chunk`` reduced to its first choice."""

    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None


@dataclass
class ToolCall:
    """A tool call rebuilt from a patched stream."""

    id: str = ""
    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        """Arguments decoded from JSON; empty when the model sent none."""
        if not self.arguments:
            return {}
        return json.loads(self.arguments)

    def to_message_entry(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallAccumulator:
    """Rebuilds tool calls from fragments, keyed by their stream index.

    Relies on every fragment carrying a stable ``index``, which the
    patched transport guarantees even for upstreams that omit it.
    """

    def __init__(self) -> None:
        self._calls: dict[int, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def feed(self, fragment: ToolCallFragment) -> None:
        call = self._calls.setdefault(fragment.index, ToolCall())
        call.id = fragment.call_id or call.id
        call.name = fragment.name or call.name
        call.arguments += fragment.arguments_delta or ""

    def finalize(self) -> list[ToolCall]:
        """Tool calls in index order."""
        return [self._calls[i] for i in sorted(self._calls)]


@dataclass
class StreamResult:
    """A fully consumed streamed turn."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None

    def assistant_message(self) -> dict[str, Any]:
        """The turn as a chat message, ready to append to the transcript."""
        message: dict[str, Any] = {
            "role": "assistant",
            "content": self.content or None,
        }
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message_entry() for tc in self.tool_calls]
        return message
