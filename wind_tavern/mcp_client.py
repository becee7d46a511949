"""MCP tool server connections.

ToolConnectionManager keeps one persistent session per tool server id,
created lazily on first use and shared by every caller after that.

Each ToolConnection is a small state machine:

    DISCONNECTED -> CONNECTING -> READY -> CLOSED
    CONNECTING -> CLOSED  (launch or handshake failure)

A connection owns a background task that enters the transport and
ClientSession contexts, publishes the ready session, and then waits for
close(). Entering and leaving the contexts in that single task keeps anyio's
cancel scopes happy no matter which task made the request.

Cancellation: call_tool/list_tools accept a CancelToken. A token that is
already cancelled fails the call before the server is touched. A token that
fires while the call (or the connection attempt it is waiting on) is still
outstanding fails the call at once and tears the connection down, because a
half-finished exchange on a stateful stdio transport cannot be trusted. The
next call for that server starts a fresh process.

Every failure surfaces as ToolServerError with the original exception in
`details`; raw transport errors never escape this module.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import Enum
from typing import Any, Literal, TypeVar

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, Implementation
from pydantic import BaseModel

from wind_tavern import __version__, config
from wind_tavern.errors import ToolServerError, describe_cause
from wind_tavern.models import MCPServer

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLIENT_INFO = Implementation(name="wind-tavern", version=__version__)
_CLOSE_TIMEOUT = 5.0

Connector = Callable[[MCPServer], AbstractAsyncContextManager[ClientSession]]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class RemoteTool(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class ToolResult(BaseModel):
    content: str  # text form sent back to the model
    raw: Any = None  # structured payload kept on the tool message
    is_error: bool = False


class ProbeResult(BaseModel):
    status: Literal["ok", "error"]
    tool_count: int | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Asyncio cancellation token.

    cancel() is idempotent. after(seconds) builds a token that cancels itself
    when the delay elapses; dispose() stops that timer once the guarded work
    is done.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None

    @classmethod
    def after(cls, seconds: float) -> CancelToken:
        token = cls()
        loop = asyncio.get_running_loop()
        token._timer = loop.call_later(max(0.0, seconds), token.cancel)
        return token

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

@asynccontextmanager
async def stdio_connector(server: MCPServer) -> AsyncIterator[ClientSession]:
    """Launch the server's command and run the MCP handshake over stdio."""
    params = StdioServerParameters(
        command=server.command,
        args=server.args,
        env={**os.environ, **server.env},
    )
    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write, client_info=_CLIENT_INFO) as session:
            await session.initialize()
            yield session


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class ToolConnection:
    """One live session with one tool server."""

    def __init__(self, server: MCPServer, connector: Connector) -> None:
        self.server = server
        self.state = ConnectionState.DISCONNECTED
        self._connector = connector
        self._closing = asyncio.Event()
        self._ready: asyncio.Future[ClientSession] | None = None
        self._task: asyncio.Task[None] | None = None

    def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        # Failed attempts may have no waiter left; mark the exception retrieved.
        self._ready.add_done_callback(lambda f: f.cancelled() or f.exception())
        self.state = ConnectionState.CONNECTING
        self._task = loop.create_task(self._run(), name=f"mcp:{self.server.name}")

    async def _run(self) -> None:
        assert self._ready is not None
        try:
            async with self._connector(self.server) as session:
                self.state = ConnectionState.READY
                self._ready.set_result(session)
                logger.info("tool server %s connected", self.server.name)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not self._ready.done():
                self._ready.set_exception(
                    ToolServerError(f"Connection to tool server '{self.server.name}' was cancelled")
                )
            raise
        except Exception as e:
            if not self._ready.done():
                logger.error(
                    "tool server %s failed to start command=%r args=%r: %s",
                    self.server.name, self.server.command, self.server.args, e,
                )
                self._ready.set_exception(e)
            else:
                logger.warning("tool server %s connection ended: %s", self.server.name, e)
        finally:
            self.state = ConnectionState.CLOSED
            if not self._ready.done():
                self._ready.set_exception(
                    ToolServerError(f"Connection to tool server '{self.server.name}' closed")
                )

    async def session(self) -> ClientSession:
        assert self._ready is not None, "open() the connection first"
        # Shielded: one waiter giving up must not cancel the shared attempt.
        return await asyncio.shield(self._ready)

    async def close(self) -> None:
        self._closing.set()
        task = self._task
        if task is None or task.done():
            self.state = ConnectionState.CLOSED
            return
        if self.state is ConnectionState.CONNECTING:
            task.cancel()
        _, pending = await asyncio.wait({task}, timeout=_CLOSE_TIMEOUT)
        if pending:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("tool server %s disconnected", self.server.name)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class ToolConnectionManager:
    """Owns the server id -> ToolConnection mapping."""

    def __init__(self, connector: Connector | None = None) -> None:
        self._connector = connector or stdio_connector
        self._connections: dict[str, ToolConnection] = {}
        self._closing: set[asyncio.Task[None]] = set()

    def connection_state(self, server_id: str) -> ConnectionState:
        conn = self._connections.get(server_id)
        return conn.state if conn else ConnectionState.DISCONNECTED

    # -- connection lifecycle ------------------------------------------

    def _connection_for(self, server: MCPServer) -> ToolConnection:
        conn = self._connections.get(server.id)
        if conn is None or conn.state is ConnectionState.CLOSED:
            conn = ToolConnection(server, self._connector)
            self._connections[server.id] = conn
            conn.open()
        return conn

    async def _session(self, server: MCPServer) -> ClientSession:
        conn = self._connection_for(server)
        try:
            return await conn.session()
        except ToolServerError:
            self._forget(server.id, conn)
            raise
        except Exception as e:
            self._forget(server.id, conn)
            raise ToolServerError(
                f"Failed to start tool server '{server.name}' with command '{server.command}'",
                details=describe_cause(e),
            ) from e

    def _forget(self, server_id: str, conn: ToolConnection | None = None) -> None:
        """Remove a connection from the mapping and close it in the background."""
        current = self._connections.get(server_id)
        if current is None or (conn is not None and current is not conn):
            return
        del self._connections[server_id]
        task = asyncio.get_running_loop().create_task(current.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def reset_connection(self, server_id: str) -> None:
        """Tear down the server's connection, if any. The next call reconnects."""
        conn = self._connections.pop(server_id, None)
        if conn is not None:
            await conn.close()

    async def close(self) -> None:
        for server_id in list(self._connections):
            await self.reset_connection(server_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # -- cancellation ----------------------------------------------------

    async def _guarded(
        self,
        server: MCPServer,
        work: Coroutine[Any, Any, T],
        token: CancelToken | None,
        what: str,
    ) -> T:
        if token is None:
            return await work
        if token.is_cancelled:
            work.close()
            raise ToolServerError(f"{what} was cancelled before it started")

        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.warning("%s cancelled; dropping connection to %s", what, server.name)
        self._forget(server.id)
        raise ToolServerError(f"{what} timed out or was cancelled")

    # -- operations ------------------------------------------------------

    async def list_tools(self, server: MCPServer, token: CancelToken | None = None) -> list[RemoteTool]:
        return await self._guarded(
            server, self._list_tools(server), token,
            f"Listing tools on server '{server.name}'",
        )

    async def _list_tools(self, server: MCPServer) -> list[RemoteTool]:
        session = await self._session(server)
        try:
            response = await session.list_tools()
        except McpError as e:
            raise ToolServerError(
                f"Failed to list tools for tool server '{server.name}'",
                details=describe_cause(e),
            ) from e
        except Exception as e:
            self._forget(server.id)
            raise ToolServerError(
                f"Failed to list tools for tool server '{server.name}'",
                details=describe_cause(e),
            ) from e
        return [
            RemoteTool(
                name=tool.name,
                description=tool.description or getattr(tool, "title", None),
                parameters=tool.inputSchema or None,
            )
            for tool in response.tools
        ]

    async def call_tool(
        self,
        server: MCPServer,
        name: str,
        arguments: Any = None,
        token: CancelToken | None = None,
    ) -> ToolResult:
        return await self._guarded(
            server, self._call_tool(server, name, arguments), token,
            f"Tool '{name}' call on server '{server.name}'",
        )

    async def _call_tool(self, server: MCPServer, name: str, arguments: Any) -> ToolResult:
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolServerError(f"Arguments for tool '{name}' must be a JSON object")

        session = await self._session(server)
        logger.debug("tool call server=%s tool=%s", server.name, name)
        try:
            result = await session.call_tool(name, arguments)
        except McpError as e:
            raise ToolServerError(
                f"Tool '{name}' failed on server '{server.name}'",
                details=describe_cause(e),
            ) from e
        except Exception as e:
            self._forget(server.id)
            raise ToolServerError(
                f"Tool '{name}' failed on server '{server.name}'",
                details=describe_cause(e),
            ) from e
        return format_tool_result(result)

    async def probe(
        self,
        server: MCPServer,
        reset: bool = False,
        timeout: float = config.DEFAULT_PROBE_TIMEOUT,
    ) -> ProbeResult:
        """Liveness check. Reports failures instead of raising them."""
        token = CancelToken.after(max(1.0, timeout))
        try:
            if reset:
                await self.reset_connection(server.id)
            tools = await self.list_tools(server, token)
            return ProbeResult(status="ok", tool_count=len(tools))
        except ToolServerError as e:
            return ProbeResult(status="error", error=e.message)
        finally:
            token.dispose()


def format_tool_result(result: CallToolResult) -> ToolResult:
    """Flatten MCP content items into the text the model will read."""
    parts: list[str] = []
    for item in result.content:
        kind = getattr(item, "type", None)
        if kind == "text":
            parts.append(item.text)
        elif kind in ("resource", "resource_link"):
            resource = getattr(item, "resource", item)
            uri = str(getattr(resource, "uri", "") or "(no uri)")
            name = getattr(item, "name", "") or ""
            parts.append(f"Resource: {name} <{uri}>" if name else f"Resource: {uri}")
        elif kind == "image":
            parts.append("[image content]")
        else:
            parts.append(item.model_dump_json())

    text = "\n".join(parts)
    structured = getattr(result, "structuredContent", None)
    if not text and structured is not None:
        text = _json_text(structured)
    return ToolResult(content=text, raw=result.model_dump(mode="json"), is_error=bool(result.isError))


def _json_text(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
