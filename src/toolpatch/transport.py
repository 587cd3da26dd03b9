"""httpx transports that patch requests and SSE responses in flight.

Wrap any transport and hand the result to an ``httpx`` client, or to
the OpenAI SDK through its ``http_client`` argument::

    transport = AsyncPatchedTransport(
        options=PatchOptions(handle_thought_signature=True),
    )
    client = AsyncOpenAI(
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        http_client=httpx.AsyncClient(transport=transport),
    )

Requests get their ``tools`` schemas sanitized and, for Gemini, the last
captured thought signature re-injected.  ``text/event-stream`` responses
are re-framed through an :class:`~toolpatch.sse.SsePatcher`.  Everything
else passes through untouched.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from toolpatch.config import PatchOptions
from toolpatch.instrumentation import (
    finish_stream_span,
    record_request_patch,
    request_span,
    start_stream_span,
)
from toolpatch.schema import SchemaTransformConfig, transform_request_tools
from toolpatch.signature import SignatureStore, inject_thought_signature
from toolpatch.sse import SsePatcher

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"


@dataclass
class RequestPatch:
    body: bytes
    schema_patched: bool = False
    signature_injected: bool = False

    @property
    def changed(self) -> bool:
        return self.schema_patched or self.signature_injected


def patch_request_body(
    body: bytes,
    options: PatchOptions,
    schema_config: SchemaTransformConfig,
    signatures: SignatureStore,
    session_id: str | None = None,
) -> RequestPatch:
    """Apply schema sanitization, then signature injection, to a body."""
    result = RequestPatch(body=body)
    if options.transform_schemas:
        transformed = transform_request_tools(result.body, schema_config)
        if transformed is not result.body:
            result.body = transformed
            result.schema_patched = True

    if options.handle_thought_signature:
        signature = signatures.get(session_id)
        if signature:
            logger.debug("[thought_signature] Injecting into request")
            injected = inject_thought_signature(result.body, signature)
            if injected is not result.body:
                result.body = injected
                result.signature_injected = True
                if options.clear_signature_after_injection:
                    signatures.pop(session_id)
    return result


def _resolve_options(options: PatchOptions | Mapping[str, Any] | None) -> PatchOptions:
    if options is None:
        return PatchOptions()
    if isinstance(options, PatchOptions):
        return options
    return PatchOptions.model_validate(options)


def _has_buffered_body(request: httpx.Request) -> bool:
    # Streaming and multipart bodies are forwarded as-is.
    return isinstance(request.stream, httpx.ByteStream) and bool(request.content)


def _is_event_stream(response: httpx.Response) -> bool:
    return EVENT_STREAM in response.headers.get("content-type", "")


def _rebuild_request(request: httpx.Request, body: bytes) -> httpx.Request:
    headers = request.headers.copy()
    for name in ("content-length", "transfer-encoding"):
        headers.pop(name, None)
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=body,
        extensions=request.extensions,
    )


def _patched_response(response: httpx.Response, stream) -> httpx.Response:
    # The patched body is decoded and re-framed, so the upstream's
    # length and encoding no longer describe it.
    headers = response.headers.copy()
    for name in ("content-length", "content-encoding"):
        headers.pop(name, None)
    return httpx.Response(
        status_code=response.status_code,
        headers=headers,
        stream=stream,
        extensions=response.extensions,
    )


class _PatchingTransport:
    """State and request handling shared by the sync and async transports."""

    def __init__(
        self,
        options: PatchOptions | Mapping[str, Any] | None = None,
        signatures: SignatureStore | None = None,
    ):
        self.options = _resolve_options(options)
        self.schema_config = self.options.schema_config()
        if signatures is None:
            signatures = SignatureStore(max_sessions=self.options.max_sessions)
        self.signatures = signatures

    def evict_session(self, session_id: str | None = None) -> bool:
        """Drop the captured signature of a finished conversation."""
        return self.signatures.evict(session_id)

    def _pop_session_id(self, request: httpx.Request) -> str | None:
        session_id = request.headers.get(self.options.session_header)
        if session_id is not None:
            del request.headers[self.options.session_header]
        return session_id

    def _patch_request(
        self, request: httpx.Request, session_id: str | None, span
    ) -> httpx.Request:
        result = patch_request_body(
            request.content, self.options, self.schema_config,
            self.signatures, session_id,
        )
        record_request_patch(span, result.schema_patched, result.signature_injected)
        if not result.changed:
            return request
        return _rebuild_request(request, result.body)

    def _should_patch(self, response: httpx.Response) -> bool:
        if not self.options.patches_stream:
            logger.debug("All stream patches disabled, passing through response")
            return False
        if not _is_event_stream(response):
            logger.debug("Not an SSE stream, passing through")
            return False
        return True

    def _new_patcher(self, session_id: str | None) -> SsePatcher:
        return SsePatcher(self.options, self.signatures, session_id)


class AsyncPatchedTransport(_PatchingTransport, httpx.AsyncBaseTransport):
    """Async transport that patches requests and SSE responses.

    Args:
        inner: Transport that performs the actual I/O. Defaults to
            ``httpx.AsyncHTTPTransport()``.
        options: :class:`PatchOptions` or a mapping validated into one.
        signatures: Store shared with other transports, if any.
    """

    def __init__(
        self,
        inner: httpx.AsyncBaseTransport | None = None,
        options: PatchOptions | Mapping[str, Any] | None = None,
        signatures: SignatureStore | None = None,
    ):
        super().__init__(options=options, signatures=signatures)
        self.inner = inner if inner is not None else httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        session_id = self._pop_session_id(request)
        with request_span(request.method, str(request.url)) as span:
            if _has_buffered_body(request):
                request = self._patch_request(request, session_id, span)
            response = await self.inner.handle_async_request(request)

        if not self._should_patch(response):
            return response
        logger.debug(f"Patching SSE stream from {request.url}")
        stream = AsyncPatchedStream(
            response, self._new_patcher(session_id),
            start_stream_span(str(request.url)),
        )
        return _patched_response(response, stream)

    async def aclose(self) -> None:
        await self.inner.aclose()


class PatchedTransport(_PatchingTransport, httpx.BaseTransport):
    """Sync twin of :class:`AsyncPatchedTransport`."""

    def __init__(
        self,
        inner: httpx.BaseTransport | None = None,
        options: PatchOptions | Mapping[str, Any] | None = None,
        signatures: SignatureStore | None = None,
    ):
        super().__init__(options=options, signatures=signatures)
        self.inner = inner if inner is not None else httpx.HTTPTransport()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        session_id = self._pop_session_id(request)
        with request_span(request.method, str(request.url)) as span:
            if _has_buffered_body(request):
                request = self._patch_request(request, session_id, span)
            response = self.inner.handle_request(request)

        if not self._should_patch(response):
            return response
        logger.debug(f"Patching SSE stream from {request.url}")
        stream = PatchedStream(
            response, self._new_patcher(session_id),
            start_stream_span(str(request.url)),
        )
        return _patched_response(response, stream)

    def close(self) -> None:
        self.inner.close()


class _StreamSpan:
    """Ends the stream span exactly once."""

    def __init__(self, patcher: SsePatcher, span):
        self.patcher = patcher
        self.span = span
        self.done = False

    def end(self, error: BaseException | None = None, completed: bool = True) -> None:
        if self.done:
            return
        self.done = True
        finish_stream_span(self.span, self.patcher.state, error=error, completed=completed)


class AsyncPatchedStream(httpx.AsyncByteStream):
    """Pull-driven patched body: one upstream read per downstream pull."""

    def __init__(self, response: httpx.Response, patcher: SsePatcher, span=None):
        self._response = response
        self._patcher = patcher
        self._span = _StreamSpan(patcher, span)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                for event in self._patcher.feed(chunk):
                    yield event
            for event in self._patcher.finish():
                yield event
        except Exception as e:
            logger.debug(f"Error in stream processing: {e}")
            self._span.end(error=e, completed=False)
            raise
        self._span.end()

    async def aclose(self) -> None:
        self._span.end(completed=self._patcher.state.saw_done)
        try:
            await self._response.aclose()
        except (httpx.HTTPError, OSError) as e:
            logger.debug(f"Ignoring error while closing upstream stream: {e}")


class PatchedStream(httpx.SyncByteStream):
    """Sync twin of :class:`AsyncPatchedStream`."""

    def __init__(self, response: httpx.Response, patcher: SsePatcher, span=None):
        self._response = response
        self._patcher = patcher
        self._span = _StreamSpan(patcher, span)

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_bytes():
                yield from self._patcher.feed(chunk)
            yield from self._patcher.finish()
        except Exception as e:
            logger.debug(f"Error in stream processing: {e}")
            self._span.end(error=e, completed=False)
            raise
        self._span.end()

    def close(self) -> None:
        self._span.end(completed=self._patcher.state.saw_done)
        try:
            self._response.close()
        except (httpx.HTTPError, OSError) as e:
            logger.debug(f"Ignoring error while closing upstream stream: {e}")


def patched_async_client(
    options: PatchOptions | Mapping[str, Any] | None = None,
    inner: httpx.AsyncBaseTransport | None = None,
    **client_kwargs: Any,
) -> httpx.AsyncClient:
    """``httpx.AsyncClient`` whose transport is an :class:`AsyncPatchedTransport`."""
    transport = AsyncPatchedTransport(inner=inner, options=options)
    return httpx.AsyncClient(transport=transport, **client_kwargs)


def patched_client(
    options: PatchOptions | Mapping[str, Any] | None = None,
    inner: httpx.BaseTransport | None = None,
    **client_kwargs: Any,
) -> httpx.Client:
    """``httpx.Client`` whose transport is a :class:`PatchedTransport`."""
    transport = PatchedTransport(inner=inner, options=options)
    return httpx.Client(transport=transport, **client_kwargs)
