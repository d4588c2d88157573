from conduit.backend import BackendHandle, connect_backend
from conduit.config import Settings, get_settings
from conduit.conversation import (
    AutoApproval,
    Conversation,
    ConversationState,
    ManualApproval,
    PendingToolUse,
)
from conduit.dispatcher import ToolDispatcher, ToolOutcome, create_dispatcher
from conduit.errors import ConduitError
from conduit.instrumentation import instrument, uninstrument
from conduit.message import Message, MessageRole
from conduit.provider import configure_logging, create_provider
from conduit.tools import tool

__all__ = [
    "AutoApproval",
    "BackendHandle",
    "ConduitError",
    "Conversation",
    "ConversationState",
    "ManualApproval",
    "Message",
    "MessageRole",
    "PendingToolUse",
    "Settings",
    "ToolDispatcher",
    "ToolOutcome",
    "configure_logging",
    "connect_backend",
    "create_dispatcher",
    "create_provider",
    "get_settings",
    "instrument",
    "tool",
    "uninstrument",
]
