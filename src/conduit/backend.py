"""MCP tool backend and its two-phase startup.

The backend is a separate process (``claude mcp serve`` by default)
reached over stdio.  Connecting takes a while, so
:func:`connect_backend` starts it in the background and hands back a
:class:`BackendHandle` that resolves exactly once: with the connected
backend, or with None when the connection failed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import TextContent

from conduit.errors import BackendAlreadyResolvedError, BackendUnavailableError
from conduit.tools import ToolDescriptor

logger = logging.getLogger(__name__)


class MCPToolBackend:
    """Tool backend speaking MCP to a subprocess over stdio."""

    def __init__(self, server_params: StdioServerParameters):
        self.server_params = server_params
        self.session: ClientSession | None = None
        self.exit_stack = AsyncExitStack()

    async def initialize(self) -> None:
        """Start the server process and complete the MCP handshake."""
        read, write = await self.exit_stack.enter_async_context(stdio_client(self.server_params))
        self.session = await self.exit_stack.enter_async_context(ClientSession(read, write))
        await self.session.initialize()
        logger.info(f"Connected to MCP server: {self.server_params.command}")

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise BackendUnavailableError("MCP backend is not connected")
        return self.session

    async def list_tools(self) -> list[ToolDescriptor]:
        response = await self._require_session().list_tools()
        tools = [
            ToolDescriptor(
                name=t.name,
                description=t.description,
                input_schema=t.inputSchema,
            )
            for t in response.tools
        ]
        logger.info(f"Fetched {len(tools)} tools")
        for i, t in enumerate(tools):
            logger.debug(f"Tool {i}: name={t.name!r} description={(t.description or 'none')[:30]!r}")
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str | None:
        result = await self._require_session().call_tool(name, arguments)
        text = "\n".join(
            block.text for block in result.content if isinstance(block, TextContent)
        )
        if result.isError:
            logger.warning(f"Tool {name} reported an error: {text[:200]}")
            return None
        return text

    async def cleanup(self) -> None:
        await self.exit_stack.aclose()
        self.session = None


class BackendHandle:
    """Resolves once with a connected backend, or None if it never came up."""

    def __init__(self) -> None:
        self._future: asyncio.Future | None = None
        self._task: asyncio.Task | None = None

    def _get_future(self) -> asyncio.Future:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        return self._future

    @property
    def resolved(self) -> bool:
        return self._future is not None and self._future.done()

    def resolve(self, backend: Any | None) -> None:
        future = self._get_future()
        if future.done():
            raise BackendAlreadyResolvedError("backend handle already resolved")
        future.set_result(backend)

    async def wait(self) -> Any | None:
        return await asyncio.shield(self._get_future())

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self.resolved:
            backend = self._future.result()
            if backend is not None and hasattr(backend, "cleanup"):
                await backend.cleanup()


def connect_backend(
    command: str,
    args: list[str],
    cwd: str | None = None,
) -> BackendHandle:
    """Launch an MCP backend in the background.

    Must be called with an event loop running.
    """
    handle = BackendHandle()
    params = StdioServerParameters(command=command, args=list(args), cwd=cwd)

    async def _connect() -> None:
        backend = MCPToolBackend(params)
        try:
            await backend.initialize()
        except Exception as e:
            logger.exception(f"Failed to initialize MCP client: {e}")
            await backend.exit_stack.aclose()
            handle.resolve(None)
            return
        handle.resolve(backend)

    handle._task = asyncio.get_running_loop().create_task(_connect())
    return handle
