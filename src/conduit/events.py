"""Events emitted by the stream interpreter."""

from __future__ import annotations

from dataclasses import dataclass, field

from conduit.value import DynamicValue


@dataclass
class InterpreterEvent:
    """Base for all interpreter events."""


@dataclass
class TextDeltaEvent(InterpreterEvent):
    """Assistant text to append to the active message."""

    content: str = ""


@dataclass
class ToolUseEvent(InterpreterEvent):
    """A tool-use block closed with a fully parsed input."""

    tool_use_id: str = ""
    tool_name: str = ""
    input: dict[str, DynamicValue] = field(default_factory=dict)


@dataclass
class ToolInputErrorEvent(InterpreterEvent):
    """A tool-use block closed but its input could not be parsed."""

    tool_use_id: str = ""
    tool_name: str = ""
    error: str = ""


@dataclass
class StreamErrorEvent(InterpreterEvent):
    """The provider reported an error in-band; the response is over."""

    message: str = ""


@dataclass
class MessageCompleteEvent(InterpreterEvent):
    """Final event of a well-formed response."""

    stop_reason: str | None = None
