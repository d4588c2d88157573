"""Streaming primitives for provider responses.

Providers yield :class:`StreamEvent` objects.  The
:class:`ToolUseAccumulator` reassembles tool-use inputs whose JSON
arrives in fragments across multiple ``content_block_delta`` events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from conduit.errors import ValueParseError
from conduit.value import DynamicValue, parse_tool_input

logger = logging.getLogger(__name__)

MESSAGE_START = "message_start"
CONTENT_BLOCK_START = "content_block_start"
CONTENT_BLOCK_DELTA = "content_block_delta"
CONTENT_BLOCK_STOP = "content_block_stop"
MESSAGE_DELTA = "message_delta"
MESSAGE_STOP = "message_stop"
ERROR = "error"
PING = "ping"

TOOL_USE_BLOCK = "tool_use"
TEXT_DELTA = "text_delta"
# Synonymous tags the upstream API has used for tool-argument fragments.
TOOL_INPUT_DELTAS = frozenset({"input_json_delta", "tool_use_delta", "partial_json"})

UNKNOWN_TOOL_ID = "unknown_tool_id"
UNKNOWN_TOOL_NAME = "unknown_tool_name"


@dataclass
class ContentBlock:
    type: str
    id: str | None = None
    name: str | None = None
    text: str | None = None


@dataclass
class Delta:
    type: str | None = None
    text: str | None = None
    partial_json: str | None = None
    stop_reason: str | None = None


@dataclass
class StreamError:
    message: str
    type: str | None = None


@dataclass
class StreamEvent:
    """Normalised streaming event from any provider."""

    type: str
    index: int | None = None
    content_block: ContentBlock | None = None
    delta: Delta | None = None
    error: StreamError | None = None
    usage: dict[str, int] = field(default_factory=dict)
    model: str | None = None


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def event_from_raw(raw: Any) -> StreamEvent:
    """Build a :class:`StreamEvent` from an SDK object or a decoded dict.

    Fields the interpreter does not use are ignored.
    """
    event = StreamEvent(type=_get(raw, "type") or "", index=_get(raw, "index"))

    block = _get(raw, "content_block")
    if block is not None:
        event.content_block = ContentBlock(
            type=_get(block, "type") or "",
            id=_get(block, "id"),
            name=_get(block, "name"),
            text=_get(block, "text"),
        )

    delta = _get(raw, "delta")
    if delta is not None:
        event.delta = Delta(
            type=_get(delta, "type"),
            text=_get(delta, "text"),
            partial_json=_get(delta, "partial_json"),
            stop_reason=_get(delta, "stop_reason"),
        )

    error = _get(raw, "error")
    if error is not None:
        event.error = StreamError(
            message=_get(error, "message") or str(error),
            type=_get(error, "type"),
        )

    message = _get(raw, "message")
    usage = _get(raw, "usage") or _get(message, "usage")
    for key in ("input_tokens", "output_tokens"):
        value = _get(usage, key)
        if isinstance(value, int):
            event.usage[key] = value
    event.model = _get(message, "model")
    return event


@dataclass
class AccumulatorEntry:
    """An in-flight tool-use block."""

    block_index: int
    tool_use_id: str
    tool_name: str
    partial_json: str = ""


@dataclass
class CompletedToolUse:
    """A closed tool-use block.

    Exactly one of ``input`` and ``error`` is set.
    """

    tool_use_id: str
    tool_name: str
    input: dict[str, DynamicValue] | None = None
    error: str | None = None


class ToolUseAccumulator:
    """Assembles tool-use inputs from streaming fragments, keyed by block index."""

    def __init__(self) -> None:
        self._open: dict[int, AccumulatorEntry] = {}

    def __contains__(self, index: int) -> bool:
        return index in self._open

    def __len__(self) -> int:
        return len(self._open)

    def entries(self) -> dict[int, AccumulatorEntry]:
        """Snapshot of the open entries by block index."""
        return dict(self._open)

    def open(
        self, index: int, tool_use_id: str | None, tool_name: str | None
    ) -> AccumulatorEntry:
        if index in self._open:
            logger.warning(f"Reopening tool-use block {index}; discarding buffered input")
        entry = AccumulatorEntry(
            block_index=index,
            tool_use_id=tool_use_id or UNKNOWN_TOOL_ID,
            tool_name=tool_name or UNKNOWN_TOOL_NAME,
        )
        self._open[index] = entry
        return entry

    def feed(self, index: int, fragment: str) -> bool:
        """Append *fragment* to the entry at *index*.

        Returns False, and drops the fragment, when no entry is open.
        """
        entry = self._open.get(index)
        if entry is None:
            logger.warning(f"No open tool-use block for index {index}; dropping fragment")
            return False
        entry.partial_json += fragment
        logger.debug(f"Accumulated JSON for index {index}: {entry.partial_json}")
        return True

    def close(self, index: int) -> CompletedToolUse | None:
        """Close the entry at *index* and parse its buffered input.

        Returns None when no tool-use block is open at *index* (for
        example a plain text block).
        """
        entry = self._open.pop(index, None)
        if entry is None:
            return None

        buffer = entry.partial_json
        if not buffer:
            # Tools without parameters stream no JSON at all.
            logger.debug(f"Empty input for tool {entry.tool_name}, using {{}}")
            buffer = "{}"

        try:
            tool_input = parse_tool_input(buffer)
        except ValueParseError as e:
            logger.warning(f"Invalid JSON in input for {entry.tool_name}: {e}")
            return CompletedToolUse(
                tool_use_id=entry.tool_use_id,
                tool_name=entry.tool_name,
                error=str(e),
            )
        return CompletedToolUse(
            tool_use_id=entry.tool_use_id,
            tool_name=entry.tool_name,
            input=tool_input,
        )

    def reset(self) -> None:
        self._open.clear()
