import logging
import os
import re
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI, DefaultAsyncHttpxClient

from toolpatch.config import PatchOptions
from toolpatch.streaming import (
    StreamChunk,
    StreamResult,
    ToolCallAccumulator,
    ToolCallFragment,
)
from toolpatch.transport import AsyncPatchedTransport

logger = logging.getLogger(__name__)

_VISION_SUFFIX = re.compile(r":vision$", re.IGNORECASE)


@dataclass
class ProviderModel:
    """A ``provider/model`` string split into its parts."""

    provider: str
    model: str
    gateway_adapter: str | None = None


def parse_provider_model_string(provider_model: str) -> ProviderModel:
    """Split ``"provider/model"`` at the first slash.

    A trailing ``:vision`` marker is dropped.  For ``ai-gateway`` the
    model itself is ``adapter/model`` and the adapter is reported too.
    """
    provider_model = _VISION_SUFFIX.sub("", provider_model)
    provider, _, model = provider_model.partition("/")
    if provider != "ai-gateway":
        return ProviderModel(provider=provider, model=model)
    adapter, _, _ = model.partition("/")
    return ProviderModel(provider=provider, model=model, gateway_adapter=adapter)


class OpenAICompatibleProvider:
    """Chat client for an OpenAI-compatible endpoint.

    Pass ``compatibility`` (a :class:`PatchOptions` or the mapping from a
    provider config) to route the client through an
    :class:`AsyncPatchedTransport`.  Without it the client talks to the
    endpoint directly.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, object] | None = None,
        compatibility: PatchOptions | Mapping[str, Any] | None = None,
        max_retries: int = 2,
        timeout: float = 600.0,
    ):
        self.base_url = base_url.rstrip("/")
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY") or "DUMMY"

        self.transport: AsyncPatchedTransport | None = None
        http_client = None
        if compatibility is not None:
            self.transport = AsyncPatchedTransport(options=compatibility)
            http_client = DefaultAsyncHttpxClient(transport=self.transport)

        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key,
            default_headers=headers,
            default_query=query,
            http_client=http_client,
            max_retries=max_retries,
            timeout=timeout,
        )

    def _request_kwargs(
        self, tools: list | None, session_id: str | None
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if session_id is not None:
            if self.transport is None:
                logger.warning(
                    "session_id given but compatibility patching is off; ignoring"
                )
            else:
                header = self.transport.options.session_header
                kwargs["extra_headers"] = {header: session_id}
        return kwargs

    async def complete(
            self,
            model: str,
            messages: list[dict],
            tools: list | None = None,
            session_id: str | None = None,
    ):
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            **self._request_kwargs(tools, session_id),
        )
        return response.choices[0].message

    async def stream_complete(
            self,
            model: str,
            messages: list[dict],
            tools: list | None = None,
            session_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as normalised :class:`StreamChunk` objects."""
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            stream=True,
            **self._request_kwargs(tools, session_id),
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            fragments = None
            if delta is not None and delta.tool_calls:
                fragments = [
                    ToolCallFragment.from_delta(tc) for tc in delta.tool_calls
                ]
            yield StreamChunk(
                content_delta=delta.content if delta is not None else None,
                tool_call_fragments=fragments,
                finish_reason=choice.finish_reason,
            )

    async def collect(
            self,
            model: str,
            messages: list[dict],
            tools: list | None = None,
            session_id: str | None = None,
    ) -> StreamResult:
        """Consume :meth:`stream_complete` and reassemble the whole turn."""
        acc = ToolCallAccumulator()
        text: list[str] = []
        finish_reason = None
        async for chunk in self.stream_complete(
            model, messages, tools=tools, session_id=session_id,
        ):
            if chunk.content_delta:
                text.append(chunk.content_delta)
            for fragment in chunk.tool_call_fragments or []:
                acc.feed(fragment)
            finish_reason = chunk.finish_reason or finish_reason
        logger.debug(f"Collected stream: {len(acc)} tool call(s), finish={finish_reason}")
        return StreamResult(
            content="".join(text),
            tool_calls=acc.finalize(),
            finish_reason=finish_reason,
        )

    def evict_session(self, session_id: str | None = None) -> bool:
        """Forget the thought signature held for ``session_id``."""
        if self.transport is None:
            return False
        return self.transport.evict_session(session_id)

    async def aclose(self) -> None:
        await self.client.close()
