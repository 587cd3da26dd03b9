"""Optional OpenTelemetry instrumentation for toolpatch.

Call ``toolpatch.instrumentation.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the transports work
identically without it.
"""

import importlib.util
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "toolpatch") -> None:
    """Enable OpenTelemetry tracing for patched requests and streams.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install toolpatch[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from toolpatch.instrumentation import instrument
        instrument()

    Each request through a patched transport gets a ``toolpatch.request``
    span; each patched SSE body gets a ``toolpatch.stream`` span that is
    ended when the body is exhausted, fails or is closed early.

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install toolpatch[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("toolpatch instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent requests will not emit spans.
    """
    global _tracer
    _tracer = None


@contextmanager
def request_span(method: str, url: str):
    """Wrap one request through a patched transport."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        "toolpatch.request",
        kind=SpanKind.CLIENT,
        attributes={
            "http.request.method": method,
            "url.full": url,
        },
    ) as span:
        yield span


def record_request_patch(
    span, schema_patched: bool, signature_injected: bool
) -> None:
    if span is None:
        return
    span.set_attribute("toolpatch.request.schema_patched", schema_patched)
    span.set_attribute(
        "toolpatch.request.signature_injected", signature_injected
    )


def start_stream_span(url: str):
    """Start a span covering one patched SSE body.

    The span is not made current: the body is consumed long after the
    request's context has exited.  End it with :func:`finish_stream_span`.
    """
    if _tracer is None:
        return None
    return _tracer.start_span(
        "toolpatch.stream",
        attributes={"url.full": url},
    )


def finish_stream_span(
    span, state, error: BaseException | None = None,
    completed: bool = True,
) -> None:
    """Record stream counters on *span* and end it."""
    if span is None:
        return
    span.set_attribute("toolpatch.stream.events", state.event_count)
    span.set_attribute("toolpatch.stream.patched", state.patched_count)
    span.set_attribute("toolpatch.stream.dropped", state.dropped_count)
    span.set_attribute(
        "toolpatch.stream.signature_captured",
        state.thought_signature is not None,
    )
    span.set_attribute("toolpatch.stream.completed", completed)
    if error is not None:
        record_error(span, error)
    span.end()


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
