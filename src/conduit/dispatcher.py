"""Tool dispatch.

A :class:`ToolDispatcher` lists the tools the model may call and runs
one call at a time.  Failures never escape :meth:`ToolDispatcher.invoke`;
they come back as a :class:`ToolOutcome` with ``is_error`` set.  Only
``asyncio.CancelledError`` propagates, so the caller can unwind.

Implementations:

- :class:`RemoteToolDispatcher` forwards to a live :class:`ToolBackend`.
- :class:`LocalToolDispatcher` serves the text-editor command set from
  memory when no backend is available.
- :class:`InterceptingToolDispatcher` answers a fixed set of tool names
  itself and delegates the rest.
- :class:`DeferredToolDispatcher` waits for a backend connection to
  settle, then picks remote or local.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol

from pydantic import BaseModel

from conduit.backend import BackendHandle
from conduit.file_store import InMemoryFileStore
from conduit.overrides import workspace_overrides
from conduit.text_editor import TEXT_EDITOR_TOOL, TextEditorCommandHandler
from conduit.tools import Tool, ToolDescriptor
from conduit.value import DynamicValue, to_call_arguments

logger = logging.getLogger(__name__)

CANCELLED_TEXT = "Tool execution cancelled by user"
FAILED_TEXT = "Tool execution failed. Please try again or use a different approach."


class ToolOutcome(BaseModel):
    text: str
    is_error: bool = False


class ToolBackend(Protocol):
    """The external tool-execution capability.

    ``call_tool`` returns None when the call failed.
    """

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str | None: ...


def _cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def failure_outcome() -> ToolOutcome:
    """Outcome for a call that produced no result."""
    if _cancelling():
        return ToolOutcome(text=CANCELLED_TEXT, is_error=True)
    return ToolOutcome(text=FAILED_TEXT, is_error=True)


class ToolDispatcher(ABC):
    @abstractmethod
    async def list_tools(self) -> list[ToolDescriptor]:
        """Return the tool catalogue.

        Raises:
            Exception: When the catalogue cannot be fetched at all.
        """

    @abstractmethod
    async def invoke(self, name: str, tool_input: dict[str, DynamicValue]) -> ToolOutcome:
        ...


class RemoteToolDispatcher(ToolDispatcher):
    def __init__(self, backend: ToolBackend):
        self.backend = backend

    async def list_tools(self) -> list[ToolDescriptor]:
        return await self.backend.list_tools()

    async def invoke(self, name: str, tool_input: dict[str, DynamicValue]) -> ToolOutcome:
        arguments = to_call_arguments(tool_input)
        logger.info(f"Calling {name} with {arguments}")
        try:
            result = await self.backend.call_tool(name, arguments)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            result = None
        if result is None:
            outcome = failure_outcome()
            logger.info(f"Tool {name} produced no result: {outcome.text}")
            return outcome
        return ToolOutcome(text=result, is_error=False)


class LocalToolDispatcher(ToolDispatcher):
    """Serves the hosted text-editor tool against an in-memory store."""

    def __init__(self, handler: TextEditorCommandHandler | None = None):
        self.handler = handler or TextEditorCommandHandler()

    async def list_tools(self) -> list[ToolDescriptor]:
        return [TEXT_EDITOR_TOOL]

    async def invoke(self, name: str, tool_input: dict[str, DynamicValue]) -> ToolOutcome:
        if name != TEXT_EDITOR_TOOL.name:
            logger.warning(f"Local fallback cannot run tool: {name}")
            return ToolOutcome(text=f"Error: Unknown tool: {name}", is_error=True)
        text, is_error = self.handler.process(tool_input)
        return ToolOutcome(text=text, is_error=is_error)


class InterceptingToolDispatcher(ToolDispatcher):
    """Runs *overrides* locally and delegates every other tool name.

    Override descriptors replace same-named entries in the delegate's
    catalogue and are appended when the delegate does not list them.
    """

    def __init__(self, delegate: ToolDispatcher, overrides: list[Tool]):
        self.delegate = delegate
        self.overrides = {t.name: t for t in overrides}

    async def list_tools(self) -> list[ToolDescriptor]:
        catalogue = await self.delegate.list_tools()
        seen: set[str] = set()
        result: list[ToolDescriptor] = []
        for descriptor in catalogue:
            override = self.overrides.get(descriptor.name)
            result.append(override.descriptor() if override else descriptor)
            seen.add(descriptor.name)
        result.extend(
            t.descriptor() for name, t in self.overrides.items() if name not in seen
        )
        return result

    async def invoke(self, name: str, tool_input: dict[str, DynamicValue]) -> ToolOutcome:
        override = self.overrides.get(name)
        if override is None:
            return await self.delegate.invoke(name, tool_input)

        logger.info(f"Intercepted tool call: {name}")
        try:
            text = await override(**to_call_arguments(tool_input))
        except TypeError as e:
            return ToolOutcome(text=f"Error: Invalid parameters for {name}: {e}", is_error=True)
        except Exception as e:
            logger.error(f"Override {name} raised: {e}")
            return ToolOutcome(text=f"Error calling {name}: {e}", is_error=True)
        return ToolOutcome(text=text, is_error=text.startswith("Error:"))


class DeferredToolDispatcher(ToolDispatcher):
    """Waits for *handle* to settle on first use.

    Dispatches remotely when the handle resolved to a backend and to
    *fallback* otherwise.
    """

    def __init__(self, handle: BackendHandle, fallback: ToolDispatcher | None = None):
        self.handle = handle
        self.fallback = fallback or LocalToolDispatcher()
        self._resolved: ToolDispatcher | None = None

    async def resolve(self) -> ToolDispatcher:
        if self._resolved is None:
            backend = await self.handle.wait()
            if backend is None:
                logger.info("No tool backend connected; using local fallback")
                self._resolved = self.fallback
            else:
                self._resolved = RemoteToolDispatcher(backend)
        return self._resolved

    async def list_tools(self) -> list[ToolDescriptor]:
        return await (await self.resolve()).list_tools()

    async def invoke(self, name: str, tool_input: dict[str, DynamicValue]) -> ToolOutcome:
        return await (await self.resolve()).invoke(name, tool_input)


def create_dispatcher(
    handle: BackendHandle | None,
    store: InMemoryFileStore | None = None,
    intercept: bool = False,
) -> ToolDispatcher:
    """Assemble the dispatcher stack for a conversation.

    With no *handle* the local fallback is used directly.  With
    *intercept* the workspace overrides answer ``View``, ``LS``, ``Edit``
    and ``Replace`` from *store*.
    """
    store = store if store is not None else InMemoryFileStore()
    local = LocalToolDispatcher(TextEditorCommandHandler(store))
    dispatcher: ToolDispatcher
    if handle is None:
        dispatcher = local
    else:
        dispatcher = DeferredToolDispatcher(handle, fallback=local)
    if intercept:
        dispatcher = InterceptingToolDispatcher(dispatcher, workspace_overrides(store))
    return dispatcher
