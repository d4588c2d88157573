"""Stream protocol interpreter.

Turns the ordered event sequence of one model response into
:mod:`conduit.events` items.  Text fragments pass straight through as
:class:`TextDeltaEvent`; tool-argument fragments are buffered in a
:class:`ToolUseAccumulator` until their block closes.

The interpreter relies on the upstream ordering guarantee (start before
deltas before stop for each index).  Anything else is logged and
dropped rather than treated as fatal.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator

from conduit import streaming
from conduit.events import (
    InterpreterEvent,
    MessageCompleteEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    ToolInputErrorEvent,
    ToolUseEvent,
)
from conduit.streaming import StreamEvent, ToolUseAccumulator

logger = logging.getLogger(__name__)


class StreamInterpreter:
    """Interprets the events of a single response.

    Create one per response; the accumulator it owns starts empty.

    Args:
        accumulator: Accumulator to buffer tool input in, or a new one.
    """

    def __init__(self, accumulator: ToolUseAccumulator | None = None):
        self.accumulator = accumulator or ToolUseAccumulator()
        self.stop_reason: str | None = None
        self.failed = False
        self.usage: dict[str, int] = {}
        self.model: str | None = None

    def handle(self, event: StreamEvent) -> list[InterpreterEvent]:
        """Interpret one event and return what it produced, in order."""
        if self.failed:
            logger.debug(f"Ignoring {event.type} after stream error")
            return []

        if event.error is not None:
            self.failed = True
            self.accumulator.reset()
            logger.error(f"Stream error: {event.error.message}")
            return [StreamErrorEvent(message=event.error.message)]

        self.usage.update(event.usage)
        if event.model:
            self.model = event.model

        if event.type in (streaming.MESSAGE_START, streaming.PING):
            return []
        if event.type == streaming.CONTENT_BLOCK_START:
            return self._block_start(event)
        if event.type == streaming.CONTENT_BLOCK_DELTA:
            return self._block_delta(event)
        if event.type == streaming.CONTENT_BLOCK_STOP:
            return self._block_stop(event)
        if event.type == streaming.MESSAGE_DELTA:
            return self._message_delta(event)
        if event.type == streaming.MESSAGE_STOP:
            if len(self.accumulator):
                logger.warning(
                    f"Message stopped with {len(self.accumulator)} tool-use block(s) still open"
                )
                self.accumulator.reset()
            return [MessageCompleteEvent(stop_reason=self.stop_reason)]

        logger.warning(f"Ignoring unknown stream event type: {event.type!r}")
        return []

    async def interpret(
        self, events: AsyncIterable[StreamEvent]
    ) -> AsyncIterator[InterpreterEvent]:
        """Interpret a whole event stream, stopping after an error."""
        async for event in events:
            for item in self.handle(event):
                yield item
            if self.failed:
                return

    def _block_start(self, event: StreamEvent) -> list[InterpreterEvent]:
        block = event.content_block
        if block is None or event.index is None:
            logger.warning("content_block_start without a block or index")
            return []
        if block.type == streaming.TOOL_USE_BLOCK:
            logger.info(
                f"Tool use started: id={block.id} name={block.name} index={event.index}"
            )
            self.accumulator.open(event.index, block.id, block.name)
            return []
        if block.text:
            return [TextDeltaEvent(content=block.text)]
        return []

    def _block_delta(self, event: StreamEvent) -> list[InterpreterEvent]:
        delta = event.delta
        if delta is None or event.index is None:
            logger.warning("content_block_delta without a delta or index")
            return []
        if delta.type == streaming.TEXT_DELTA:
            return [TextDeltaEvent(content=delta.text)] if delta.text else []
        if delta.type in streaming.TOOL_INPUT_DELTAS:
            if delta.partial_json is None:
                logger.warning(f"Tool input delta ({delta.type}) carried no fragment")
                return []
            self.accumulator.feed(event.index, delta.partial_json)
            return []
        logger.debug(f"Ignoring delta of type {delta.type!r}")
        return []

    def _block_stop(self, event: StreamEvent) -> list[InterpreterEvent]:
        if event.index is None:
            logger.warning("content_block_stop without an index")
            return []
        completed = self.accumulator.close(event.index)
        if completed is None:
            return []
        if completed.error is not None:
            return [ToolInputErrorEvent(
                tool_use_id=completed.tool_use_id,
                tool_name=completed.tool_name,
                error=completed.error,
            )]
        return [ToolUseEvent(
            tool_use_id=completed.tool_use_id,
            tool_name=completed.tool_name,
            input=completed.input,
        )]

    def _message_delta(self, event: StreamEvent) -> list[InterpreterEvent]:
        delta = event.delta
        if delta is None:
            return []
        if delta.stop_reason:
            self.stop_reason = delta.stop_reason
        if delta.text:
            return [TextDeltaEvent(content=delta.text)]
        return []
