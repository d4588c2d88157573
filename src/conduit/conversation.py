"""Conversation state machine.

A :class:`Conversation` owns the message log and drives the
request -> stream -> tool -> approval -> continue cycle::

    IDLE --submit()--> STREAMING --tool result--> TOOLS_PENDING
      ^                    |                           |
      +-- done/cancel/error+        approve() re-enters STREAMING,
                                    cancel_tool() returns to IDLE

Everything here runs on one event loop.  The stream and the tool call
each run in their own task, but only this object writes to the log:
tool results come back through a done-callback, and the stream task
only touches the log from within its own coroutine on the same loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from enum import Enum

from pydantic import BaseModel

from conduit.dispatcher import FAILED_TEXT, ToolDispatcher, ToolOutcome, create_dispatcher
from conduit.events import (
    InterpreterEvent,
    MessageCompleteEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    ToolInputErrorEvent,
    ToolUseEvent,
)
from conduit import instrumentation
from conduit.instrumentation import (
    record_approval,
    record_cancelled,
    record_error,
    record_stream_end,
    record_tool_outcome,
    stream_span,
    tool_span,
)
from conduit.interpreter import StreamInterpreter
from conduit.message import Message, MessageRole, tool_result_envelope
from conduit.provider import ModelProvider, ModelRequest, create_provider
from conduit.session import Session
from conduit.streaming import AccumulatorEntry
from conduit.value import DynamicValue

logger = logging.getLogger(__name__)

CANCELLED_MARKER = "[Response cancelled by user]"


class ConversationState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"


class PendingToolUse(BaseModel):
    tool_use_id: str
    tool_name: str
    result_text: str
    is_error: bool


class ApprovalPolicy:
    """Decides whether a finished tool call continues without the user."""

    def auto_approve(self, pending: PendingToolUse) -> bool:
        return False


class ManualApproval(ApprovalPolicy):
    """Every tool result waits for :meth:`Conversation.approve`."""


class AutoApproval(ApprovalPolicy):
    """Continue as soon as a tool result lands."""

    def auto_approve(self, pending: PendingToolUse) -> bool:
        return True


def format_tool_use(tool_name: str, tool_input: dict[str, DynamicValue]) -> str:
    """Human-readable summary of a tool call for the message log."""

    def text(key: str) -> str | None:
        value = tool_input.get(key)
        return value.as_string() if value is not None else None

    output = f"Tool Used: {tool_name}\n"
    command = text("command")
    if command is None:
        return output

    output += f"Command: {command}\n"
    path = text("path")
    if path is not None:
        output += f"Path: {path}\n"

    if command == "str_replace":
        if (old := text("old_str")) is not None:
            output += f'Replace: "{old}"\n'
        if (new := text("new_str")) is not None:
            output += f'With: "{new}"\n'
    elif command == "insert":
        line_value = tool_input.get("insert_line")
        line = line_value.as_int() if line_value is not None else None
        if line is not None:
            output += f"Insert Line: {line}\n"
        if (new := text("new_str")) is not None:
            output += f'Text to Insert: "{new}"\n'
    return output


class Conversation:
    """One chat with a model that can call tools.

    Args:
        provider: Streams model responses.
        dispatcher: Lists and runs tools.
        model: Model name passed to the provider.
        max_tokens: Generation limit per response.
        system_prompt: Optional system prompt sent with every request.
        approval_policy: Whether tool results need explicit approval.
            Defaults to :class:`ManualApproval`.
        session: Existing message log to continue, or a fresh one.
    """

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        model: str,
        max_tokens: int = 4000,
        system_prompt: str | None = None,
        approval_policy: ApprovalPolicy | None = None,
        session: Session | None = None,
    ):
        self.provider = provider
        self.dispatcher = dispatcher
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.approval_policy = approval_policy or ManualApproval()
        self.session = session or Session(session_id=str(uuid.uuid4()))

        self.streaming = False
        self.error_message: str | None = None
        self.pending_tool_use: PendingToolUse | None = None

        self._interpreter = StreamInterpreter()
        self._stream_task: asyncio.Task | None = None
        self._tool_task: asyncio.Task | None = None
        # cancelled tasks still unwinding
        self._retired: set[asyncio.Task] = set()
        # streams stopped by cancel_stream() or a new message
        self._user_cancelled: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, handle=None, store=None) -> Conversation:
        """Build a conversation from :class:`~conduit.config.Settings`.

        *handle* is the pending backend connection, if any; without one
        tools are served by the local fallback.
        """
        policy = AutoApproval() if settings.auto_approve else ManualApproval()
        return cls(
            provider=create_provider(settings),
            dispatcher=create_dispatcher(handle, store, settings.intercept_workspace_tools),
            model=settings.model,
            max_tokens=settings.max_tokens,
            system_prompt=settings.system_prompt,
            approval_policy=policy,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return self.session.transcript

    @property
    def waiting_for_approval(self) -> bool:
        return self.pending_tool_use is not None

    @property
    def tool_running(self) -> bool:
        return self._tool_task is not None and not self._tool_task.done()

    @property
    def stream_task(self) -> asyncio.Task | None:
        return self._stream_task

    @property
    def open_accumulators(self) -> dict[int, AccumulatorEntry]:
        return self._interpreter.accumulator.entries()

    @property
    def state(self) -> ConversationState:
        if self.waiting_for_approval or self.tool_running:
            return ConversationState.TOOLS_PENDING
        if self.streaming:
            return ConversationState.STREAMING
        return ConversationState.IDLE

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit(self, user_text: str) -> bool:
        """Send a user message and start streaming the reply.

        Returns False, doing nothing, for empty or whitespace-only text.
        """
        if not user_text.strip():
            return False
        self.session.append(MessageRole.USER, user_text)
        # a new request cycle abandons any tool call from the previous one
        if self.pending_tool_use is not None or self.tool_running:
            logger.info("New message submitted; dropping unsent tool call")
            self._drop_tool("rejected")
        self._start_stream(instrumentation.USER_MESSAGE)
        return True

    def approve(self) -> bool:
        """Send the pending tool result back to the model and continue.

        Returns False when nothing is pending.
        """
        return self._continue_with_result("approved")

    def cancel_tool(self) -> bool:
        """Drop the pending or executing tool call without continuing.

        Returns False when there is no tool call to cancel.
        """
        if self.pending_tool_use is None and not self.tool_running:
            return False
        self._drop_tool("rejected")
        return True

    def cancel_stream(self) -> None:
        """Stop the streaming response, marking it as cancelled by the user."""
        self._stop_stream(by_user=True)

    async def wait(self) -> None:
        """Wait until no stream or tool task is running."""
        while True:
            tasks = [
                t for t in (self._stream_task, self._tool_task, *self._retired)
                if t is not None and not t.done()
            ]
            if not tasks:
                return
            await asyncio.wait(tasks)
            # let done-callbacks run before looking again
            await asyncio.sleep(0)

    def _retire(self, task: asyncio.Task) -> None:
        task.cancel()
        self._retired.add(task)
        task.add_done_callback(self._retired.discard)

    async def close(self) -> None:
        self.cancel_stream()
        self.cancel_tool()
        await self.wait()

    def _continue_with_result(self, outcome: str) -> bool:
        pending = self.pending_tool_use
        if pending is None:
            return False
        logger.info(f"Tool result for {pending.tool_use_id} {outcome.replace('_', ' ')}")
        record_approval(self.session.session_id, pending.tool_use_id, pending.tool_name, outcome)
        self.session.append(
            MessageRole.ASSISTANT,
            tool_result_envelope(pending.tool_use_id, pending.result_text, pending.is_error),
        )
        self.pending_tool_use = None
        self._start_stream(instrumentation.TOOL_RESULT)
        return True

    def _drop_tool(self, outcome: str) -> None:
        pending = self.pending_tool_use
        if pending is not None:
            record_approval(self.session.session_id, pending.tool_use_id, pending.tool_name, outcome)
        if self.tool_running:
            logger.info("Cancelling tool execution")
            self._retire(self._tool_task)
        self._tool_task = None
        self.pending_tool_use = None

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stop_stream(self, by_user: bool) -> None:
        task = self._stream_task
        if task is not None and not task.done():
            logger.info(f"Cancelling stream (by_user={by_user})")
            if by_user:
                self._user_cancelled.add(task)
                task.add_done_callback(self._user_cancelled.discard)
            self._retire(task)
        self.streaming = False

    def _start_stream(self, trigger: str) -> None:
        self._stop_stream(by_user=trigger == instrumentation.USER_MESSAGE)
        self.error_message = None
        self.streaming = True
        self._interpreter = StreamInterpreter()
        placeholder = self.session.append(MessageRole.ASSISTANT, "")
        self._stream_task = asyncio.get_running_loop().create_task(
            self._run_stream(placeholder, self._interpreter, trigger)
        )

    async def _run_stream(
        self, placeholder: Message, interpreter: StreamInterpreter, trigger: str
    ) -> None:
        async with stream_span(self.session.session_id, self.model, trigger) as span:
            stop_reason = None
            tool_calls = 0
            try:
                try:
                    tools = await self.dispatcher.list_tools()
                except Exception as e:
                    logger.error(f"Failed to fetch tools: {e}")
                    record_error(span, e)
                    self.error_message = f"Error fetching tools: {e}"
                    return

                request = ModelRequest(
                    model=self.model,
                    messages=self.session.upstream_messages(),
                    tools=tools,
                    max_tokens=self.max_tokens,
                    system=self.system_prompt,
                )
                async for event in self.provider.stream(request):
                    for item in interpreter.handle(event):
                        if isinstance(item, ToolUseEvent):
                            tool_calls += 1
                        elif isinstance(item, MessageCompleteEvent):
                            stop_reason = item.stop_reason
                        self._apply(item, placeholder)
                    if interpreter.failed:
                        break
                record_stream_end(span, stop_reason, tool_calls)
            except asyncio.CancelledError:
                by_user = asyncio.current_task() in self._user_cancelled
                record_cancelled(span, by_user)
                if by_user:
                    placeholder.content += ("\n" if placeholder.content else "") + CANCELLED_MARKER
                raise
            except Exception as e:
                logger.error(f"Stream failed: {e}")
                record_error(span, e)
                self.error_message = f"Error: {e}"
            finally:
                if self._stream_task is asyncio.current_task():
                    self.streaming = False

    def _apply(self, item: InterpreterEvent, placeholder: Message) -> None:
        if isinstance(item, TextDeltaEvent):
            placeholder.content += item.content
        elif isinstance(item, ToolUseEvent):
            self._handle_tool_use(item)
        elif isinstance(item, ToolInputErrorEvent):
            self.session.append(
                MessageRole.TOOL_USE, f"Error parsing tool JSON: {item.error}"
            )
        elif isinstance(item, StreamErrorEvent):
            self.error_message = f"Stream error: {item.message}"
        elif isinstance(item, MessageCompleteEvent):
            logger.debug(f"Response complete, stop_reason={item.stop_reason}")

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def _handle_tool_use(self, event: ToolUseEvent) -> None:
        logger.info(f"Handling tool use: id={event.tool_use_id} name={event.tool_name}")
        self.session.append(MessageRole.TOOL_USE, format_tool_use(event.tool_name, event.input))

        if self.pending_tool_use is not None:
            logger.warning(
                f"Not executing {event.tool_name}: result of "
                f"{self.pending_tool_use.tool_use_id} still awaits approval"
            )
            return
        if self.tool_running:
            logger.info("Cancelling previous tool execution")
            self._retire(self._tool_task)

        task = asyncio.get_running_loop().create_task(self._run_tool(event))
        task.add_done_callback(functools.partial(self._on_tool_done, event))
        self._tool_task = task

    async def _run_tool(self, event: ToolUseEvent) -> ToolOutcome:
        async with tool_span(event.tool_name, event.tool_use_id) as span:
            outcome = await self.dispatcher.invoke(event.tool_name, event.input)
            record_tool_outcome(span, outcome)
            return outcome

    def _on_tool_done(self, event: ToolUseEvent, task: asyncio.Task) -> None:
        if task is not self._tool_task:
            # cancelled or superseded; its result must not land
            return
        self._tool_task = None
        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.error(f"Dispatcher raised for {event.tool_name}: {exc}")
            outcome = ToolOutcome(text=FAILED_TEXT, is_error=True)
        else:
            outcome = task.result()

        logger.info(f"Tool {event.tool_name} finished, is_error={outcome.is_error}")
        self.session.append(MessageRole.TOOL_RESULT, outcome.text)
        self.pending_tool_use = PendingToolUse(
            tool_use_id=event.tool_use_id,
            tool_name=event.tool_name,
            result_text=outcome.text,
            is_error=outcome.is_error,
        )
        if self.approval_policy.auto_approve(self.pending_tool_use):
            stream = self._stream_task
            if stream is not None and not stream.done():
                # continue once the response that asked for the tool has ended
                stream.add_done_callback(
                    functools.partial(self._auto_continue, self.pending_tool_use)
                )
            else:
                self._continue_with_result("auto_approved")

    def _auto_continue(self, pending: PendingToolUse, stream: asyncio.Task) -> None:
        if stream.cancelled() or self.pending_tool_use is not pending:
            return
        self._continue_with_result("auto_approved")
