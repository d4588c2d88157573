"""End-to-end conversation cycles against scripted streams."""

import asyncio

import pytest

from conduit.conversation import (
    CANCELLED_MARKER,
    AutoApproval,
    Conversation,
    ConversationState,
)
from conduit.dispatcher import FAILED_TEXT, RemoteToolDispatcher, ToolOutcome, create_dispatcher
from conduit.file_store import InMemoryFileStore
from conduit.message import MessageRole, tool_result_envelope

from tests.conftest import (
    FakeBackend,
    RecordingDispatcher,
    ScriptedProvider,
    error_event,
    message_end,
    message_start,
    spans_named,
    text_block,
    text_response,
    tool_block,
    tool_response,
)


async def until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def roles(conversation):
    return [m.role for m in conversation.messages]


# ---------------------------------------------------------------------------
# Plain text turns
# ---------------------------------------------------------------------------


class TestTextTurn:
    @pytest.mark.asyncio
    async def test_text_response(self):
        provider = ScriptedProvider(text_response("Hel", "lo!"))
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        assert conversation.submit("hello") is True
        assert conversation.state is ConversationState.STREAMING
        await conversation.wait()

        assert roles(conversation) == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conversation.messages[1].content == "Hello!"
        assert conversation.state is ConversationState.IDLE
        assert conversation.error_message is None

    @pytest.mark.asyncio
    async def test_request_excludes_placeholder_and_carries_tools(self):
        provider = ScriptedProvider(text_response("ok"))
        dispatcher = RecordingDispatcher()
        conversation = Conversation(provider, dispatcher, model="m", max_tokens=99, system_prompt="sys")

        conversation.submit("hello")
        await conversation.wait()

        request = provider.requests[0]
        assert request.messages == [{"role": "user", "content": "hello"}]
        assert [t.name for t in request.tools] == ["LS"]
        assert request.model == "m"
        assert request.max_tokens == 99
        assert request.system == "sys"

    @pytest.mark.asyncio
    async def test_second_turn_includes_history(self):
        provider = ScriptedProvider(text_response("first"), text_response("second"))
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("one")
        await conversation.wait()
        conversation.submit("two")
        await conversation.wait()

        assert provider.requests[1].messages == [
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "first"},
            {"role": "user", "content": "two"},
        ]


# ---------------------------------------------------------------------------
# Tool use and approval
# ---------------------------------------------------------------------------


class TestToolApproval:
    @pytest.mark.asyncio
    async def test_list_files_then_approve(self):
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path":"', '/repo"}', text="I'll list them."),
            text_response("There are two files."),
        )
        dispatcher = RecordingDispatcher(outcome=ToolOutcome(text="/repo/foo.swift\n/repo/primes.py"))
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("list files")
        await conversation.wait()

        assert dispatcher.calls == [("LS", {"path": "/repo"})]
        assert roles(conversation) == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL_USE,
            MessageRole.TOOL_RESULT,
        ]
        assert conversation.messages[1].content == "I'll list them."
        assert conversation.messages[2].content == "Tool Used: LS\n"
        assert conversation.messages[3].content == "/repo/foo.swift\n/repo/primes.py"
        assert conversation.waiting_for_approval
        assert conversation.state is ConversationState.TOOLS_PENDING
        assert len(provider.requests) == 1

        assert conversation.approve() is True
        await conversation.wait()

        envelope = tool_result_envelope("toolu_1", "/repo/foo.swift\n/repo/primes.py", False)
        assert conversation.messages[4].role is MessageRole.ASSISTANT
        assert conversation.messages[4].content == envelope
        assert conversation.messages[-1].content == "There are two files."
        assert conversation.waiting_for_approval is False
        assert conversation.state is ConversationState.IDLE

        continued = provider.requests[1].messages
        assert continued[-1]["role"] == "assistant"
        assert continued[-1]["content"].endswith(envelope)

    @pytest.mark.asyncio
    async def test_cancel_pending_tool(self):
        provider = ScriptedProvider(tool_response("toolu_1", "LS", '{"path": "/repo"}'))
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("list files")
        await conversation.wait()
        assert conversation.cancel_tool() is True
        await conversation.wait()

        assert conversation.waiting_for_approval is False
        assert conversation.state is ConversationState.IDLE
        assert len(provider.requests) == 1
        assert conversation.approve() is False

    @pytest.mark.asyncio
    async def test_cancel_running_tool_discards_result(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(tool_response("toolu_1", "LS", '{"path": "/repo"}'))
        dispatcher = RecordingDispatcher(gate=gate)
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("list files")
        await until(lambda: dispatcher.calls)
        assert conversation.state is ConversationState.TOOLS_PENDING

        assert conversation.cancel_tool() is True
        gate.set()
        await conversation.wait()

        assert MessageRole.TOOL_RESULT not in roles(conversation)
        assert conversation.waiting_for_approval is False
        assert conversation.state is ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_tool_without_parameters_dispatched_with_empty_input(self):
        provider = ScriptedProvider(tool_response("toolu_1", "list_everything"))
        dispatcher = RecordingDispatcher()
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("go")
        await conversation.wait()

        assert dispatcher.calls == [("list_everything", {})]

    @pytest.mark.asyncio
    async def test_dispatcher_failure_still_gated(self):
        provider = ScriptedProvider(tool_response("toolu_9", "Bash", '{"command": "ls"}'), text_response("ok"))
        conversation = Conversation(provider, RemoteToolDispatcher(FakeBackend()), model="m")

        conversation.submit("run ls")
        await conversation.wait()

        assert conversation.messages[-1].content == FAILED_TEXT
        assert conversation.pending_tool_use.is_error is True
        assert conversation.waiting_for_approval

        conversation.approve()
        await conversation.wait()
        assert tool_result_envelope("toolu_9", FAILED_TEXT, True) in [
            m.content for m in conversation.messages
        ]

    @pytest.mark.asyncio
    async def test_tool_call_during_pending_approval_not_executed(self):
        gate = asyncio.Event()
        provider = ScriptedProvider([
            message_start(),
            *tool_block(0, "toolu_1", "LS", '{"path": "/a"}'),
            gate,
            *tool_block(1, "toolu_2", "LS", '{"path": "/b"}'),
            *message_end("tool_use"),
        ])
        dispatcher = RecordingDispatcher()
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("list both")
        await until(lambda: conversation.waiting_for_approval)
        gate.set()
        await conversation.wait()

        assert dispatcher.calls == [("LS", {"path": "/a"})]
        assert roles(conversation).count(MessageRole.TOOL_USE) == 2
        assert conversation.pending_tool_use.tool_use_id == "toolu_1"

    @pytest.mark.asyncio
    async def test_new_message_drops_unsent_result(self):
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path": "/a"}'),
            tool_response("toolu_2", "LS", '{"path": "/b"}'),
            text_response("Listed /b."),
        )
        dispatcher = RecordingDispatcher()
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("list /a")
        await conversation.wait()
        assert conversation.pending_tool_use.tool_use_id == "toolu_1"

        conversation.submit("actually, list /b")
        await conversation.wait()

        assert dispatcher.calls == [("LS", {"path": "/a"}), ("LS", {"path": "/b"})]
        assert conversation.pending_tool_use.tool_use_id == "toolu_2"

        conversation.approve()
        await conversation.wait()

        contents = [m.content for m in conversation.messages]
        assert tool_result_envelope("toolu_2", "ok", False) in contents
        assert tool_result_envelope("toolu_1", "ok", False) not in contents
        assert conversation.messages[-1].content == "Listed /b."

    @pytest.mark.asyncio
    async def test_new_message_cancels_running_tool(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path": "/a"}'),
            text_response("Never mind then."),
        )
        dispatcher = RecordingDispatcher(gate=gate)
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("list /a")
        await until(lambda: dispatcher.calls)
        assert conversation.tool_running

        conversation.submit("stop, just say hi")
        gate.set()
        await conversation.wait()

        assert MessageRole.TOOL_RESULT not in roles(conversation)
        assert conversation.waiting_for_approval is False
        assert conversation.messages[-1].content == "Never mind then."
        assert conversation.state is ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_auto_approval_continues(self):
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path": "/repo"}'),
            text_response("Done."),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m", approval_policy=AutoApproval())

        conversation.submit("list files")
        await conversation.wait()

        assert len(provider.requests) == 2
        assert conversation.messages[-1].content == "Done."
        assert conversation.waiting_for_approval is False
        assert all(CANCELLED_MARKER not in m.content for m in conversation.messages)

    @pytest.mark.asyncio
    async def test_auto_approval_waits_for_stream_to_end(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [
                message_start(),
                *tool_block(0, "toolu_1", "LS", '{"path": "/repo"}'),
                gate,
                *message_end("tool_use"),
            ],
            text_response("Done."),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m", approval_policy=AutoApproval())

        conversation.submit("list files")
        await until(lambda: conversation.waiting_for_approval)
        assert len(provider.requests) == 1

        gate.set()
        await conversation.wait()

        assert len(provider.requests) == 2
        assert conversation.messages[-1].content == "Done."
        assert all(CANCELLED_MARKER not in m.content for m in conversation.messages)


# ---------------------------------------------------------------------------
# Cancellation and concurrency
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stream_mid_response(self):
        gate = asyncio.Event()
        start, delta, *rest = text_block(0, "Partial")
        provider = ScriptedProvider([message_start(), start, delta, gate, *rest, *message_end()])
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("tell me a story")
        placeholder = conversation.messages[-1]
        await until(lambda: placeholder.content == "Partial")

        conversation.cancel_stream()
        assert conversation.streaming is False
        await conversation.wait()

        assert placeholder.content == "Partial\n" + CANCELLED_MARKER
        assert conversation.state is ConversationState.IDLE
        assert conversation.error_message is None

    @pytest.mark.asyncio
    async def test_new_submit_replaces_running_stream(self):
        gate = asyncio.Event()
        provider = ScriptedProvider([message_start(), gate], text_response("second"))
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("first")
        first_task = conversation.stream_task
        await until(lambda: provider.requests)

        conversation.submit("second")
        second_task = conversation.stream_task
        assert second_task is not first_task
        await conversation.wait()

        assert first_task.cancelled()
        assert conversation.messages[1].content == CANCELLED_MARKER
        assert conversation.messages[-1].content == "second"
        assert conversation.streaming is False

    @pytest.mark.asyncio
    async def test_approval_mid_stream_leaves_response_unmarked(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [
                message_start(),
                *text_block(0, "Checking."),
                *tool_block(1, "toolu_1", "LS", '{"path": "/a"}'),
                gate,
                *message_end("tool_use"),
            ],
            text_response("Done."),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("list /a")
        await until(lambda: conversation.waiting_for_approval)
        first_task = conversation.stream_task

        conversation.approve()
        await conversation.wait()

        assert first_task.cancelled()
        assert conversation.messages[1].content == "Checking."
        assert all(CANCELLED_MARKER not in m.content for m in conversation.messages)
        assert conversation.messages[-1].content == "Done."

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self):
        gate = asyncio.Event()
        provider = ScriptedProvider([message_start(), gate])
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("hang")
        await until(lambda: provider.requests)
        await conversation.close()

        assert conversation.stream_task.done()
        assert conversation.state is ConversationState.IDLE


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_tool_catalogue_failure(self):
        provider = ScriptedProvider(text_response("never"))
        dispatcher = RecordingDispatcher(list_error=RuntimeError("backend down"))
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("hello")
        await conversation.wait()

        assert conversation.error_message == "Error fetching tools: backend down"
        assert provider.requests == []
        assert conversation.state is ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_malformed_tool_input_is_not_fatal(self):
        provider = ScriptedProvider([
            message_start(),
            *tool_block(0, "toolu_1", "LS", '{"path": '),
            *text_block(1, "continuing"),
            *message_end(),
        ])
        dispatcher = RecordingDispatcher()
        conversation = Conversation(provider, dispatcher, model="m")

        conversation.submit("go")
        await conversation.wait()

        tool_messages = [m for m in conversation.messages if m.role is MessageRole.TOOL_USE]
        assert len(tool_messages) == 1
        assert tool_messages[0].content.startswith("Error parsing tool JSON: JSON parsing error")
        assert dispatcher.calls == []
        assert conversation.messages[1].content == "continuing"
        assert conversation.error_message is None
        assert conversation.waiting_for_approval is False

    @pytest.mark.asyncio
    async def test_in_band_stream_error(self):
        provider = ScriptedProvider([
            message_start(),
            *text_block(0, "Hi"),
            error_event("Overloaded"),
            *text_block(1, "ignored"),
        ])
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("hello")
        await conversation.wait()

        assert conversation.error_message == "Stream error: Overloaded"
        assert conversation.messages[1].content == "Hi"
        assert conversation.streaming is False
        assert conversation.open_accumulators == {}

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        provider = ScriptedProvider([message_start(), ConnectionError("connection reset")])
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("hello")
        await conversation.wait()

        assert conversation.error_message == "Error: connection reset"
        assert conversation.state is ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_submit_clears_previous_error(self):
        provider = ScriptedProvider([error_event("Overloaded")], text_response("fine"))
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("one")
        await conversation.wait()
        assert conversation.error_message is not None

        conversation.submit("two")
        assert conversation.error_message is None
        await conversation.wait()
        assert conversation.messages[-1].content == "fine"


# ---------------------------------------------------------------------------
# Local fallback
# ---------------------------------------------------------------------------


class TestLocalFallback:
    @pytest.mark.asyncio
    async def test_text_editor_fix_round_trip(self):
        store = InMemoryFileStore()
        provider = ScriptedProvider(
            tool_response(
                "toolu_1",
                "str_replace_editor",
                '{"command": "str_replace", "path": "/repo/primes.py", ',
                '"old_str": "limit + 1)\\n", "new_str": "limit + 1):\\n"}',
            ),
            text_response("Fixed."),
        )
        conversation = Conversation(provider, create_dispatcher(None, store), model="m")

        conversation.submit("fix the syntax error in primes.py")
        await conversation.wait()

        assert conversation.messages[-2].content == (
            "Tool Used: str_replace_editor\n"
            "Command: str_replace\n"
            "Path: /repo/primes.py\n"
            'Replace: "limit + 1)\n"\n'
            'With: "limit + 1):\n"\n'
        )
        assert conversation.messages[-1].content == "Successfully replaced text at exactly one location."
        assert "limit + 1):" in store.read("/repo/primes.py")
        assert provider.requests[0].tools[0].to_anthropic() == {
            "type": "text_editor_20250124",
            "name": "str_replace_editor",
        }

        conversation.approve()
        await conversation.wait()
        assert conversation.messages[-1].content == "Fixed."




# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


class TestTracing:
    @pytest.mark.asyncio
    async def test_stream_tool_and_approval_spans(self, spans):
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path": "/repo"}'),
            text_response("Two files."),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("list files")
        await conversation.wait()
        conversation.approve()
        await conversation.wait()

        first, second = spans_named(spans, "conduit.stream")
        assert first.attributes["conduit.stream.trigger"] == "user_message"
        assert first.attributes["conduit.stream.stop_reason"] == "tool_use"
        assert first.attributes["conduit.stream.tool_calls"] == 1
        assert second.attributes["conduit.stream.trigger"] == "tool_result"
        assert second.attributes["conduit.stream.tool_calls"] == 0
        assert first.attributes["conduit.conversation.id"] == conversation.session.session_id

        (tool,) = spans_named(spans, "execute_tool LS")
        assert tool.attributes["gen_ai.tool.call.id"] == "toolu_1"
        assert tool.attributes["conduit.tool.is_error"] is False
        assert tool.parent.span_id == first.context.span_id

        (approval,) = spans_named(spans, "conduit.approval")
        assert approval.attributes["conduit.approval.outcome"] == "approved"

    @pytest.mark.asyncio
    async def test_tool_error_and_rejection(self, spans):
        provider = ScriptedProvider(tool_response("toolu_9", "Bash", '{"command": "ls"}'))
        conversation = Conversation(provider, RemoteToolDispatcher(FakeBackend()), model="m")

        conversation.submit("run ls")
        await conversation.wait()
        conversation.cancel_tool()

        (tool,) = spans_named(spans, "execute_tool Bash")
        assert tool.attributes["conduit.tool.is_error"] is True
        (approval,) = spans_named(spans, "conduit.approval")
        assert approval.attributes["conduit.approval.outcome"] == "rejected"

    @pytest.mark.asyncio
    async def test_auto_approval_recorded(self, spans):
        provider = ScriptedProvider(
            tool_response("toolu_1", "LS", '{"path": "/repo"}'),
            text_response("Done."),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m", approval_policy=AutoApproval())

        conversation.submit("list files")
        await conversation.wait()

        (approval,) = spans_named(spans, "conduit.approval")
        assert approval.attributes["conduit.approval.outcome"] == "auto_approved"

    @pytest.mark.asyncio
    async def test_user_cancellation_recorded(self, spans):
        gate = asyncio.Event()
        provider = ScriptedProvider([message_start(), gate])
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("hang")
        await until(lambda: provider.requests)
        conversation.cancel_stream()
        await conversation.wait()

        (stream,) = spans_named(spans, "conduit.stream")
        assert stream.attributes["conduit.stream.cancelled"] is True
        assert stream.attributes["conduit.stream.cancelled_by"] == "user"

    @pytest.mark.asyncio
    async def test_continuation_cancellation_recorded(self, spans):
        gate = asyncio.Event()
        provider = ScriptedProvider(
            [message_start(), *tool_block(0, "toolu_1", "LS", '{"path": "/a"}'), gate],
            text_response("ok"),
        )
        conversation = Conversation(provider, RecordingDispatcher(), model="m")

        conversation.submit("list")
        await until(lambda: conversation.waiting_for_approval)
        conversation.approve()
        await conversation.wait()

        by_trigger = {s.attributes["conduit.stream.trigger"]: s for s in spans_named(spans, "conduit.stream")}
        assert by_trigger["user_message"].attributes["conduit.stream.cancelled_by"] == "continuation"
        assert "conduit.stream.cancelled" not in by_trigger["tool_result"].attributes
