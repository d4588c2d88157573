import asyncio

import pytest

import conduit.instrumentation as inst
from conduit.dispatcher import ToolDispatcher, ToolOutcome
from conduit.file_store import InMemoryFileStore
from conduit.provider import ModelProvider, ModelRequest
from conduit.streaming import ContentBlock, Delta, StreamError, StreamEvent
from conduit.tools import ToolDescriptor


# ---------------------------------------------------------------------------
# Stream event builders (mirror the Anthropic streaming wire shape)
# ---------------------------------------------------------------------------

def message_start() -> StreamEvent:
    return StreamEvent(type="message_start", model="mock-model")


def text_block(index: int, *chunks: str) -> list[StreamEvent]:
    """A complete text block streaming *chunks* in order."""
    events = [StreamEvent(
        type="content_block_start",
        index=index,
        content_block=ContentBlock(type="text", text=""),
    )]
    events += [
        StreamEvent(
            type="content_block_delta",
            index=index,
            delta=Delta(type="text_delta", text=chunk),
        )
        for chunk in chunks
    ]
    events.append(StreamEvent(type="content_block_stop", index=index))
    return events


def tool_block(
    index: int,
    tool_use_id: str | None,
    name: str | None,
    *fragments: str,
    delta_type: str = "input_json_delta",
) -> list[StreamEvent]:
    """A complete tool-use block whose input arrives as *fragments*."""
    events = [StreamEvent(
        type="content_block_start",
        index=index,
        content_block=ContentBlock(type="tool_use", id=tool_use_id, name=name),
    )]
    events += [
        StreamEvent(
            type="content_block_delta",
            index=index,
            delta=Delta(type=delta_type, partial_json=fragment),
        )
        for fragment in fragments
    ]
    events.append(StreamEvent(type="content_block_stop", index=index))
    return events


def message_end(stop_reason: str = "end_turn") -> list[StreamEvent]:
    return [
        StreamEvent(type="message_delta", delta=Delta(stop_reason=stop_reason)),
        StreamEvent(type="message_stop"),
    ]


def error_event(message: str) -> StreamEvent:
    return StreamEvent(type="error", error=StreamError(message=message, type="overloaded_error"))


def text_response(*chunks: str) -> list[StreamEvent]:
    """A whole response containing only text."""
    return [message_start(), *text_block(0, *chunks), *message_end()]


def tool_response(
    tool_use_id: str, name: str, *fragments: str, text: str | None = None
) -> list[StreamEvent]:
    """A whole response that calls one tool, optionally after some text."""
    events = [message_start()]
    index = 0
    if text is not None:
        events += text_block(0, text)
        index = 1
    events += tool_block(index, tool_use_id, name, *fragments)
    events += message_end("tool_use")
    return events


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued event scripts.  No network calls.

    A script item may also be an ``asyncio.Event`` (the stream blocks
    until it is set) or an exception instance (raised at that point).
    """

    name = "scripted"

    def __init__(self, *scripts: list):
        self.scripts = list(scripts)
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else []
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, BaseException):
                raise item
            else:
                yield item


# ---------------------------------------------------------------------------
# Mock dispatcher
# ---------------------------------------------------------------------------

class RecordingDispatcher(ToolDispatcher):
    """Dispatcher test double that records calls and returns canned outcomes."""

    def __init__(
        self,
        tools: list[ToolDescriptor] | None = None,
        outcome: ToolOutcome | None = None,
        gate: asyncio.Event | None = None,
        list_error: Exception | None = None,
    ):
        self.tools = tools if tools is not None else [
            ToolDescriptor(name="LS", description="List files", input_schema={
                "type": "object", "properties": {"path": {"type": "string"}},
            }),
        ]
        self.outcome = outcome or ToolOutcome(text="ok", is_error=False)
        self.gate = gate
        self.list_error = list_error
        self.calls: list[tuple[str, dict]] = []
        self.list_calls = 0

    async def list_tools(self):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.tools)

    async def invoke(self, name, tool_input):
        self.calls.append((name, {k: v.to_python() for k, v in tool_input.items()}))
        if self.gate is not None:
            await self.gate.wait()
        return self.outcome


class FakeBackend:
    """In-process stand-in for a connected tool backend."""

    def __init__(self, tools=None, results=None, error: Exception | None = None):
        self.tools = tools or []
        self.results = results or {}
        self.error = error
        self.calls: list[tuple[str, dict]] = []
        self.cleaned_up = False

    async def list_tools(self):
        return list(self.tools)

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        return self.results.get(name)

    async def cleanup(self):
        self.cleaned_up = True


@pytest.fixture
def store():
    return InMemoryFileStore()


@pytest.fixture
def empty_store():
    return InMemoryFileStore(files={})


@pytest.fixture
def spans():
    """Route conduit spans to an in-memory exporter for the test."""
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    inst._tracer = provider.get_tracer("conduit-tests")
    yield exporter
    inst._tracer = None
    provider.shutdown()


def spans_named(exporter, prefix: str) -> list:
    return [s for s in exporter.get_finished_spans() if s.name.startswith(prefix)]
