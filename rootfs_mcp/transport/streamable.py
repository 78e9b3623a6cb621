"""Per-session Streamable HTTP binding around the MCP SDK transport."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import TYPE_CHECKING, Any

import anyio
from pydantic import ValidationError

try:
    from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
    from mcp.types import InitializeRequest, JSONRPCRequest
except ImportError as e:
    raise ImportError(
        "CRITICAL: Missing 'mcp' dependency. "
        "The 'mcp' package (>= 1.8, with streamable HTTP support) is required."
    ) from e

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
    from mcp.server import Server
    from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

__all__ = [
    "MCP_SESSION_ID_HEADER",
    "StreamableSessionBinding",
    "is_initialize_request",
    "replay_receive",
    "with_session_header",
]


def is_initialize_request(payload: Any) -> bool:
    """True if a decoded JSON-RPC body is a single, well-formed initialize request."""
    if not isinstance(payload, dict) or payload.get("method") != "initialize":
        return False
    try:
        JSONRPCRequest.model_validate(payload)
        InitializeRequest.model_validate(
            {"method": payload["method"], "params": payload.get("params")}
        )
    except ValidationError:
        return False
    return True


def replay_receive(body: bytes, receive: Receive) -> Receive:
    """
    Wrap an ASGI receive so an already-consumed request body is delivered again.

    The session router has to read the body to decide whether it is an
    initialize request; the SDK transport then reads it a second time.
    """
    sent = False

    async def _receive() -> dict[str, Any]:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive


def with_session_header(scope: Scope, session_id: str) -> Scope:
    """Copy of an ASGI scope whose ``mcp-session-id`` header is ``session_id``."""
    name = MCP_SESSION_ID_HEADER.encode("latin-1")
    headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != name]
    headers.append((name, session_id.encode("latin-1")))
    return {**scope, "headers": headers}


class StreamableSessionBinding:
    """
    One session's SDK transport plus the task that runs its MCP server.

    Example:
        binding = StreamableSessionBinding(session_id, server)
        await binding.start(task_group)
        await binding.handle_request(scope, receive, send)
        await binding.close()
    """

    def __init__(
        self,
        session_id: str,
        server: Server,
        *,
        json_response: bool = False,
        on_exit: Callable[[str], Awaitable[Any]] | None = None,
    ):
        self.session_id = session_id
        self.server = server
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._on_exit = on_exit
        self._closed = False

    async def start(self, task_group: TaskGroup) -> None:
        """Start the server task; returns once the transport streams are connected."""
        await task_group.start(self._run)

    async def _run(self, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with self.transport.connect() as (read_stream, write_stream):
                task_status.started()
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        except Exception:
            logger.exception(f"Session {self.session_id} server crashed")
        finally:
            if self._on_exit is not None and not self._closed:
                with anyio.CancelScope(shield=True):
                    await self._on_exit(self.session_id)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_request(scope, receive, send)

    async def close(self) -> None:
        """Terminate the transport; this also ends any open server-push stream."""
        if self._closed:
            return
        self._closed = True
        await self.transport.terminate()
