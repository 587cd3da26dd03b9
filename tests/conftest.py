import json

import httpx
import pytest

from toolpatch.config import PatchOptions
from toolpatch.signature import SignatureStore


# ---------------------------------------------------------------------------
# SSE builders (mirror the OpenAI chat.completion.chunk shape)
# ---------------------------------------------------------------------------

def sse_event(payload) -> str:
    """One ``data:`` event; dicts are serialized compactly."""
    if not isinstance(payload, str):
        payload = json.dumps(payload, separators=(",", ":"))
    return f"data: {payload}\n\n"


def sse_body(*payloads, done: bool = True) -> bytes:
    text = "".join(sse_event(p) for p in payloads)
    if done:
        text += sse_event("[DONE]")
    return text.encode("utf-8")


def chunk(*choices, **extra) -> dict:
    return {"object": "chat.completion.chunk", "choices": list(choices), **extra}


def tool_call_choice(
    *calls, index: int = 0, finish_reason=None, content=None,
) -> dict:
    delta = {"tool_calls": list(calls)}
    if content is not None:
        delta["content"] = content
    return {"index": index, "delta": delta, "finish_reason": finish_reason}


def text_choice(content: str, index: int = 0, finish_reason=None) -> dict:
    return {
        "index": index,
        "delta": {"content": content},
        "finish_reason": finish_reason,
    }


def payloads(raw: bytes) -> list:
    """Decode the ``data:`` payloads of a patched SSE body, in order."""
    out = []
    for event in raw.decode("utf-8").split("\n\n"):
        data = [
            line[len("data: "):]
            for line in event.split("\n")
            if line.startswith("data:")
        ]
        if not data:
            continue
        text = "\n".join(data)
        out.append(text if text == "[DONE]" else json.loads(text))
    return out


# ---------------------------------------------------------------------------
# Fake upstream
# ---------------------------------------------------------------------------

class FakeUpstream:
    """Records requests and answers with queued responses.

    Install with ``httpx.MockTransport(upstream)``.
    """

    def __init__(self):
        self.responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    def queue_sse(self, body, status_code: int = 200, **headers) -> None:
        self.responses.append(httpx.Response(
            status_code,
            headers={"content-type": "text/event-stream", **headers},
            content=body,
        ))

    def queue_json(self, data: dict, status_code: int = 200) -> None:
        self.responses.append(httpx.Response(status_code, json=data))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def gemini_options():
    return PatchOptions(handle_thought_signature=True)


@pytest.fixture
def signature_store():
    return SignatureStore()


@pytest.fixture
def request_body():
    """Factory for chat-completion request bodies."""
    def _make(messages=None, tools=None, **extra) -> dict:
        body = {
            "model": "gemini-3-pro-preview",
            "messages": messages or [{"role": "user", "content": "hi"}],
            **extra,
        }
        if tools is not None:
            body["tools"] = tools
        return body
    return _make
