"""Optional OpenTelemetry spans for conversation cycles.

Tracing is off until :func:`instrument` is called, and every helper here
is a no-op while it is off, so ``opentelemetry-api`` is only needed by
applications that want traces.

One request/stream cycle produces a ``conduit.stream`` span with the
provider's ``chat`` span and any ``execute_tool`` span nested inside it.
Approval decisions are recorded as short ``conduit.approval`` spans since
they happen between cycles, driven by the user.

Attributes set by this module:

- ``conduit.conversation.id``: session the cycle belongs to
- ``conduit.stream.trigger``: ``user_message`` or ``tool_result``
- ``conduit.stream.stop_reason`` and ``conduit.stream.tool_calls``
- ``conduit.stream.cancelled`` and ``conduit.stream.cancelled_by``
  (``user`` or ``continuation``)
- ``conduit.tool.is_error`` and ``conduit.tool.result_length``
- ``conduit.approval.outcome``: ``approved``, ``auto_approved`` or ``rejected``
"""

import importlib.util
import logging
from contextlib import asynccontextmanager, contextmanager

logger = logging.getLogger(__name__)

_tracer = None

USER_MESSAGE = "user_message"
TOOL_RESULT = "tool_result"


def instrument(*, tracer_name: str = "conduit") -> None:
    """Start emitting spans through the global TracerProvider.

    Configure the provider first, then call this once::

        trace.set_tracer_provider(provider)
        conduit.instrument()

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install conduit[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured; conduit spans will be dropped")
    else:
        logger.info(f"conduit tracing enabled as {tracer_name!r}")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@contextmanager
def _span(name: str, attributes: dict, kind: str | None = None):
    if _tracer is None:
        yield None
        return
    options = {"attributes": attributes}
    if kind is not None:
        from opentelemetry.trace import SpanKind
        options["kind"] = SpanKind[kind]
    with _tracer.start_as_current_span(name, **options) as span:
        yield span


@asynccontextmanager
async def stream_span(conversation_id: str, model: str, trigger: str):
    """Span for one request/stream cycle.

    *trigger* says what started the cycle: :data:`USER_MESSAGE` or
    :data:`TOOL_RESULT` (an approved tool result being sent back).
    """
    with _span(
        f"conduit.stream {model}",
        {
            "conduit.conversation.id": conversation_id,
            "conduit.stream.trigger": trigger,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(provider: str, model: str):
    """Client span around a single provider streaming call."""
    with _span(
        f"chat {model}",
        {
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
        kind="CLIENT",
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, tool_use_id: str):
    with _span(
        f"execute_tool {tool_name}",
        {
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": tool_use_id,
        },
    ) as span:
        yield span


def record_approval(conversation_id: str, tool_use_id: str, tool_name: str, outcome: str) -> None:
    """Record what happened to a tool result waiting for approval."""
    with _span(
        f"conduit.approval {tool_name}",
        {
            "conduit.conversation.id": conversation_id,
            "gen_ai.tool.call.id": tool_use_id,
            "conduit.approval.outcome": outcome,
        },
    ):
        pass


def record_tool_outcome(span, outcome) -> None:
    """Mark a tool span with the dispatcher's :class:`~conduit.dispatcher.ToolOutcome`.

    Error results are data, not exceptions, but the span status still
    reflects them.
    """
    if span is None:
        return
    span.set_attribute("conduit.tool.is_error", outcome.is_error)
    span.set_attribute("conduit.tool.result_length", len(outcome.text))
    if outcome.is_error:
        from opentelemetry.trace import StatusCode
        span.set_status(StatusCode.ERROR, outcome.text)


def record_stream_end(span, stop_reason: str | None, tool_calls: int) -> None:
    if span is None:
        return
    if stop_reason is not None:
        span.set_attribute("conduit.stream.stop_reason", stop_reason)
    span.set_attribute("conduit.stream.tool_calls", tool_calls)


def record_cancelled(span, by_user: bool) -> None:
    """Mark a stream span as cut short.

    A stream is cancelled either by the user or because an approved tool
    result started the next cycle while it was still running.
    """
    if span is None:
        return
    span.set_attribute("conduit.stream.cancelled", True)
    span.set_attribute("conduit.stream.cancelled_by", "user" if by_user else "continuation")


def record_usage(span, usage: dict[str, int] | None, response_model: str | None = None):
    """Set token counts reported by the provider; missing counts are skipped."""
    if span is None or usage is None:
        return
    for key in ("input_tokens", "output_tokens"):
        if usage.get(key) is not None:
            span.set_attribute(f"gen_ai.usage.{key}", usage[key])
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on *span*."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
