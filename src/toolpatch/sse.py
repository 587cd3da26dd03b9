"""Server-Sent Events patching for chat-completion streams.

:class:`SsePatcher` is the per-stream state machine.  It does no I/O:
the transport feeds it raw upstream bytes and forwards whatever it
returns, so it works the same under sync and async clients.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from toolpatch.config import PatchOptions
from toolpatch.jsonpath import dumps, is_non_empty_list, is_non_empty_str, is_plain_object, safe_get
from toolpatch.signature import SignatureStore, extract_thought_signature
from toolpatch.streaming import ChoiceIndexState, ensure_tool_call_index

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class StreamState:
    """State carried across the events of one response stream."""

    choices: dict[int, ChoiceIndexState] = field(default_factory=dict)
    saw_tool_calls_finish: bool = False
    saw_done: bool = False
    event_count: int = 0
    patched_count: int = 0
    dropped_count: int = 0
    thought_signature: str | None = None

    def choice_state(self, choice_index: int) -> ChoiceIndexState:
        if choice_index not in self.choices:
            self.choices[choice_index] = ChoiceIndexState()
        return self.choices[choice_index]


@dataclass
class PayloadPatch:
    """Outcome of patching one event payload.

    ``patched`` is ``None`` when the original event should be forwarded
    verbatim.
    """

    patched: str | None = None
    drop: bool = False


def should_filter_empty_chunk(choices: list[Any]) -> bool:
    """True when every choice with a delta carries neither content nor
    tool calls.

    Events without any delta object are never considered empty.
    """
    has_delta = False
    for choice in choices:
        delta = safe_get(choice, "delta")
        if not is_plain_object(delta):
            continue
        has_delta = True
        if is_non_empty_list(safe_get(delta, "tool_calls")):
            return False
        if is_non_empty_str(safe_get(delta, "content")):
            return False
    return has_delta


def _choice_index(choice: dict[str, Any]) -> int:
    index = choice.get("index", 0)
    if isinstance(index, bool):
        return 0
    if isinstance(index, int):
        return index
    # Some upstreams serialize the choice index as 1.0.
    if isinstance(index, float) and index.is_integer():
        return int(index)
    return 0


def patch_tool_call_indices(choices: list[Any], state: StreamState) -> bool:
    mutated = False
    for choice in choices:
        if not is_plain_object(choice):
            continue
        if safe_get(choice, "finish_reason") == "tool_calls":
            logger.debug("Detected finish_reason: tool_calls")
            state.saw_tool_calls_finish = True

        tool_calls = safe_get(choice, "delta", "tool_calls")
        if not is_non_empty_list(tool_calls):
            continue

        choice_state = state.choice_state(_choice_index(choice))
        for call in tool_calls:
            if not is_plain_object(call):
                continue
            if ensure_tool_call_index(choice_state, call):
                mutated = True
    return mutated


def patch_chunk_payload(
    payload: str, state: StreamState, options: PatchOptions
) -> PayloadPatch:
    """Patch the JSON payload of one event.

    Anything that does not parse, or is not a chat-completion chunk with
    a non-empty ``choices`` list, is forwarded unchanged.
    """
    try:
        data = json.loads(payload)
    except (ValueError, RecursionError) as e:
        logger.debug(f"Failed to parse chunk, forwarding as-is: {e}")
        return PayloadPatch()

    choices = safe_get(data, "choices")
    if not is_non_empty_list(choices):
        return PayloadPatch()

    if options.handle_thought_signature:
        signature = extract_thought_signature(choices)
        if signature:
            logger.debug(f"[thought_signature] Extracted: {signature[:30]}...")
            state.thought_signature = signature

    if not options.patch_tool_call_index:
        return PayloadPatch()

    if options.filter_empty_chunks and state.saw_tool_calls_finish:
        if should_filter_empty_chunk(choices):
            logger.debug("Filtering empty chunk after tool_calls")
            return PayloadPatch(drop=True)

    if not patch_tool_call_indices(choices, state):
        return PayloadPatch()
    return PayloadPatch(patched=dumps(data))


def _data_value(line: str) -> str:
    value = line[len("data:"):]
    if value.startswith(" "):
        value = value[1:]
    return value


class SsePatcher:
    """Splits an SSE byte stream into events and patches each one.

    Args:
        options: Behaviour switches shared with the owning transport.
        signatures: Where a captured thought signature is handed off
            when the stream completes.
        session_id: Conversation the stream belongs to.
    """

    def __init__(
        self,
        options: PatchOptions,
        signatures: SignatureStore | None = None,
        session_id: str | None = None,
    ):
        self.options = options
        self.signatures = signatures
        self.session_id = session_id
        self.state = StreamState()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._handed_off = False

    def feed(self, chunk: bytes) -> list[bytes]:
        """Consume upstream bytes; return the complete events they close."""
        self._buffer = (self._buffer + self._decoder.decode(chunk)).replace("\r\n", "\n")
        out = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            event = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2:]
            out.extend(self._emit(event))
        return out

    def finish(self) -> list[bytes]:
        """Flush the trailing partial event and hand off the signature.

        Only called when the upstream completed normally.
        """
        self._buffer = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        out = []
        if self._buffer.strip():
            out.extend(self._emit(self._buffer))
        self._buffer = ""
        self._hand_off_signature()
        return out

    def _hand_off_signature(self) -> None:
        # Also runs at [DONE]; SDK clients stop reading at the sentinel.
        if self._handed_off:
            return
        self._handed_off = True
        signature = self.state.thought_signature
        if self.options.handle_thought_signature and signature and self.signatures is not None:
            self.signatures.put(signature, self.session_id)
            logger.debug(f"[thought_signature] Stored for next request (session={self.session_id!r})")

    def _emit(self, event: str) -> list[bytes]:
        transformed = self.transform_event(event)
        if transformed is None:
            return []
        return [f"{transformed}\n\n".encode("utf-8")]

    def transform_event(self, event: str) -> str | None:
        """Return the event to forward, or ``None`` to drop it."""
        if not event.strip():
            return event
        self.state.event_count += 1

        lines = event.split("\n")
        data_lines = [line for line in lines if line.startswith("data:")]
        if not data_lines:
            return event

        payload = "\n".join(_data_value(line) for line in data_lines)
        if payload == DONE_SENTINEL:
            self.state.saw_done = True
            self._hand_off_signature()
            return event
        if not payload:
            return event

        result = patch_chunk_payload(payload, self.state, self.options)
        if result.drop:
            self.state.dropped_count += 1
            return None
        if result.patched is None:
            return event

        self.state.patched_count += 1
        other_lines = [line for line in lines if not line.startswith("data:")]
        patched_lines = [f"data: {line}" for line in result.patched.split("\n")]
        return "\n".join(other_lines + patched_lines)
