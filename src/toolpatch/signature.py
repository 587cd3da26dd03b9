"""Gemini thought-signature bridging.

Gemini 3 models attach an opaque ``thought_signature`` to function-call
turns and reject the follow-up request with ``Function call is missing
a thought_signature`` unless the token is echoed back.  OpenAI-style
clients drop the unknown field, so the transport captures it from the
response stream and puts it back on the next request.

Only the first tool call of the most recent function-calling assistant
turn carries the signature, at
``tool_calls[0].extra_content.google.thought_signature``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from typing import Any

from toolpatch.jsonpath import dumps, is_non_empty_list, is_non_empty_str, is_plain_object, safe_get

logger = logging.getLogger(__name__)

EXTENSION_KEY = "extra_content"
PROVIDER_KEY = "google"
SIGNATURE_FIELD = "thought_signature"


def extract_thought_signature(choices: list[Any]) -> str | None:
    """Return the first signature found in the choices' deltas.

    Most chunks carry none; that is the normal case, not an error.
    """
    for choice in choices:
        delta = safe_get(choice, "delta")
        if not is_plain_object(delta):
            continue

        direct = safe_get(delta, SIGNATURE_FIELD)
        if is_non_empty_str(direct):
            logger.debug(f"[thought_signature] Found at delta.{SIGNATURE_FIELD}")
            return direct

        tool_calls = safe_get(delta, "tool_calls")
        if is_non_empty_list(tool_calls):
            nested = safe_get(tool_calls[0], EXTENSION_KEY, PROVIDER_KEY, SIGNATURE_FIELD)
            if is_non_empty_str(nested):
                logger.debug(
                    f"[thought_signature] Found at delta.tool_calls[0].{EXTENSION_KEY}.{PROVIDER_KEY}"
                )
                return nested
    return None


def _find_last_tool_call_turn(messages: list[Any]) -> int | None:
    for i in range(len(messages) - 1, -1, -1):
        msg = messages[i]
        if safe_get(msg, "role") == "assistant" and is_non_empty_list(safe_get(msg, "tool_calls")):
            return i
    return None


def _child_object(parent: dict[str, Any], key: str) -> dict[str, Any] | None:
    if key not in parent or parent[key] is None:
        parent[key] = {}
    child = parent[key]
    return child if is_plain_object(child) else None


def inject_thought_signature(body: str | bytes, signature: str) -> str | bytes:
    """Put ``signature`` on the last function-calling assistant turn.

    Returns ``body`` unchanged when there is no such turn or when the
    body does not have the expected shape.
    """
    try:
        data = json.loads(body)
    except (ValueError, RecursionError) as e:
        logger.debug(f"[thought_signature] Failed to parse body for injection: {e}")
        return body

    messages = safe_get(data, "messages")
    if not is_non_empty_list(messages):
        logger.debug("[thought_signature] No messages array, skipping injection")
        return body

    target = _find_last_tool_call_turn(messages)
    if target is None:
        logger.debug("[thought_signature] No assistant message with tool_calls found")
        return body

    first_call = messages[target]["tool_calls"][0]
    if not is_plain_object(first_call):
        logger.debug("[thought_signature] First tool_call is not an object")
        return body

    extension = _child_object(first_call, EXTENSION_KEY)
    provider = _child_object(extension, PROVIDER_KEY) if extension is not None else None
    if provider is None:
        logger.debug(f"[thought_signature] {EXTENSION_KEY} has an unexpected shape, skipping")
        return body

    provider[SIGNATURE_FIELD] = signature
    logger.debug(f"[thought_signature] Injected into message[{target}].tool_calls[0]")
    serialized = dumps(data)
    if isinstance(body, bytes):
        return serialized.encode("utf-8")
    return serialized


class SignatureStore:
    """Latest thought signature per conversation.

    Conversations are identified by whatever id the caller sends in the
    session header.  Requests without one share the ``None`` slot, which
    only behaves correctly when those requests are strictly sequential.
    The store is bounded: once ``max_sessions`` conversations are held,
    the one written least recently is dropped.

    Thread-safe via an internal lock.
    """

    def __init__(self, max_sessions: int = 1000):
        self.max_sessions = max_sessions
        self._signatures: OrderedDict[str | None, str] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str | None = None) -> str | None:
        with self._lock:
            return self._signatures.get(session_id)

    def put(self, signature: str, session_id: str | None = None) -> None:
        with self._lock:
            self._signatures[session_id] = signature
            self._signatures.move_to_end(session_id)
            while len(self._signatures) > self.max_sessions:
                evicted, _ = self._signatures.popitem(last=False)
                logger.debug(f"[thought_signature] Evicted session {evicted!r} (store full)")

    def pop(self, session_id: str | None = None) -> str | None:
        with self._lock:
            return self._signatures.pop(session_id, None)

    def evict(self, session_id: str | None = None) -> bool:
        """Forget the signature for ``session_id``; True if one was held."""
        return self.pop(session_id) is not None

    def clear(self) -> None:
        with self._lock:
            self._signatures.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._signatures)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._signatures
