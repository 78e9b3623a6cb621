"""HTTP server exposing MCP over the Streamable HTTP transport."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

import anyio
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from rootfs_mcp.sessions import ProtocolOrderingError, SessionRegistry
from rootfs_mcp.transport.auth import TokenAuthMiddleware
from rootfs_mcp.transport.streamable import (
    MCP_SESSION_ID_HEADER,
    StreamableSessionBinding,
    is_initialize_request,
    replay_receive,
    with_session_header,
)

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
    from mcp.server import Server
    from starlette.types import Message, Receive, Scope, Send

    from rootfs_mcp.config import RootFsConfig
    from rootfs_mcp.server import RootFsMcpServer

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700


class PayloadTooLarge(Exception):
    """Request body exceeded limits.max_request_bytes."""


def _jsonrpc_error(code: int, message: str, request_id: Any = None, status: int = 400) -> Response:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id},
        status_code=status,
    )


class _McpEndpoint:
    """Raw ASGI endpoint for /mcp (the SDK transport writes the response itself)."""

    def __init__(self, http_server: MCPHttpServer):
        self.http_server = http_server

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.http_server.handle_mcp(scope, receive, send)


class MCPHttpServer:
    """
    HTTP server that exposes the rootfs MCP server over Streamable HTTP.

    Routes /mcp requests to per-session transports through the
    SessionRegistry; each session runs its own MCP server task inside a
    task group owned by the application lifespan.

    Example:
        server = MCPHttpServer(mcp_server, config)
        server.run()  # Blocks, serving HTTP
    """

    def __init__(
        self,
        mcp_server: RootFsMcpServer,
        config: RootFsConfig,
        host: str | None = None,
        port: int | None = None,
    ):
        """
        Initialize HTTP server.

        Args:
            mcp_server: Operation catalog shared by all sessions
            config: Server configuration
            host: Bind address (default from config)
            port: Port number (default from config)
        """
        self.mcp_server = mcp_server
        self.config = config
        self.host = host or config.server.host
        self.port = port or config.server.port

        self._task_group: TaskGroup | None = None
        self.sessions = SessionRegistry(
            self._create_binding,
            create_on_stream_open=config.sessions.create_on_stream_open,
        )

        self.app = self._create_app()

        logger.info(f"HTTP server initialized (will bind to {self.host}:{self.port})")

    def _create_app(self) -> Starlette:
        """Create the Starlette ASGI application."""
        routes = [
            Route("/", endpoint=self._health, methods=["GET"]),
            Route("/health", endpoint=self._health, methods=["GET"]),
            Route(
                "/.well-known/oauth-protected-resource",
                endpoint=self._resource_metadata,
                methods=["GET"],
            ),
            Route("/mcp", endpoint=_McpEndpoint(self)),
            Route("/admin/clear-sessions", endpoint=self._clear_sessions, methods=["POST"]),
            Route("/admin/sessions", endpoint=self._list_sessions, methods=["GET"]),
        ]

        middleware = [
            Middleware(
                CORSMiddleware,
                allow_origin_regex=".*",
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
                # Browsers and proxies must be able to read the session header
                expose_headers=[MCP_SESSION_ID_HEADER],
            )
        ]
        if self.config.auth.mode == "token":
            middleware.append(Middleware(TokenAuthMiddleware, config=self.config.auth))

        return Starlette(routes=routes, middleware=middleware, lifespan=self._lifespan)

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette):
        logger.info("HTTP server starting up")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            if self.config.sessions.idle_timeout_s > 0:
                tg.start_soon(self._reap_idle_sessions)
            try:
                yield
            finally:
                logger.info("HTTP server shutting down")
                with anyio.CancelScope(shield=True):
                    await self.sessions.clear()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def _reap_idle_sessions(self) -> None:
        limit = self.config.sessions.idle_timeout_s
        while True:
            await anyio.sleep(self.config.sessions.reap_interval_s)
            expired = await self.sessions.expire_idle(limit)
            if expired:
                logger.info(f"Expired {len(expired)} idle session(s) (idle > {limit}s)")

    async def _create_binding(self, session_id: str) -> tuple[StreamableSessionBinding, Server]:
        """SessionRegistry factory: start a session's server task and transport."""
        if self._task_group is None:
            raise RuntimeError("Session task group not running (lifespan not started)")
        server = self.mcp_server.create_session_server(session_id)
        binding = StreamableSessionBinding(
            session_id,
            server,
            json_response=self.config.server.json_response,
            on_exit=self._on_session_exit,
        )
        await binding.start(self._task_group)
        return binding, server

    async def _on_session_exit(self, session_id: str) -> None:
        await self.sessions.discard(session_id)

    async def _read_body(self, request: Request) -> bytes:
        limit = self.config.limits.max_request_bytes
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise PayloadTooLarge
        chunks = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > limit:
                raise PayloadTooLarge
            chunks.append(chunk)
        return b"".join(chunks)

    async def handle_mcp(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Route one /mcp request to its session's transport."""
        request = Request(scope, receive)
        method = request.method
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        request_id = None

        response_status: int | None = None

        async def tracking_send(message: Message) -> None:
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message["status"]
            await send(message)

        logger.debug(f"[{method} /mcp] sid={session_id or '(none)'}")

        try:
            if method == "GET":
                ctx, created = await self.sessions.open_stream(session_id)
                if created:
                    # The transport only serves streams that name its session
                    scope = with_session_header(scope, ctx.session_id)
                await ctx.binding.handle_request(scope, receive, tracking_send)
                if created and not (response_status and 200 <= response_status < 300):
                    # Nobody learned the minted id; don't keep it around
                    await self.sessions.close(ctx.session_id, reason="rejected")

            elif method == "POST":
                try:
                    body = await self._read_body(request)
                except PayloadTooLarge:
                    response = PlainTextResponse("Payload Too Large", status_code=413)
                    await response(scope, receive, tracking_send)
                    return
                try:
                    payload = json.loads(body)
                except ValueError:
                    response = _jsonrpc_error(PARSE_ERROR, "Parse error: invalid JSON")
                    await response(scope, receive, tracking_send)
                    return
                if isinstance(payload, dict):
                    request_id = payload.get("id")

                ctx = await self.sessions.route(
                    session_id, initialize=is_initialize_request(payload)
                )
                await ctx.binding.handle_request(
                    scope, replay_receive(body, receive), tracking_send
                )

            elif method == "DELETE":
                await self.sessions.close(session_id)
                await Response(status_code=200)(scope, receive, tracking_send)

            else:
                response = PlainTextResponse("Method Not Allowed", status_code=405)
                await response(scope, receive, tracking_send)

        except ProtocolOrderingError as e:
            logger.info(f"[{method} /mcp] rejected sid={session_id or '(none)'}: {e}")
            await _jsonrpc_error(e.code, str(e), request_id)(scope, receive, tracking_send)
        except Exception:
            logger.exception(f"[{method} /mcp] unhandled error")
            if response_status is None:
                response = PlainTextResponse("Internal Server Error", status_code=500)
                await response(scope, receive, send)

    async def _health(self, request: Request) -> JSONResponse:
        """
        Health check endpoint (public, no auth).

        Returns:
            {"status": "ok", "sessions": <count>, "tools": <count>, ...}
        """
        return JSONResponse(
            {
                "status": "ok",
                "sessions": len(self.sessions),
                "tools": len(self.mcp_server.tools),
                "transport": "streamable-http",
                "server": "rootfs-mcp",
            }
        )

    async def _resource_metadata(self, request: Request) -> JSONResponse:
        """OAuth protected-resource metadata advertising that no auth server is used."""
        resource = f"https://{request.headers.get('host', '')}"
        return JSONResponse(
            {
                "resource": resource,
                "authorization_servers": [],
                "scopes_supported": [],
                "resource_documentation": resource,
            }
        )

    async def _clear_sessions(self, request: Request) -> PlainTextResponse:
        count = await self.sessions.clear()
        logger.info(f"Admin cleared {count} session(s)")
        return PlainTextResponse("cleared")

    async def _list_sessions(self, request: Request) -> JSONResponse:
        data: dict[str, Any] = {
            "count": len(self.sessions),
            "sessions": self.sessions.snapshot(),
        }
        if self.mcp_server.metrics.enabled:
            data["metrics"] = self.mcp_server.metrics.snapshot()
        return JSONResponse(data)

    def run(self, host: str | None = None, port: int | None = None) -> None:
        """
        Run the HTTP server (blocks).

        Args:
            host: Override bind address
            port: Override port number
        """
        import uvicorn

        bind_host = host or self.host
        bind_port = port or self.port

        logger.info(f"MCP (Streamable HTTP) running at http://{bind_host}:{bind_port}/mcp")
        logger.info(f"Allowed base = {self.mcp_server.operations.root}")

        uvicorn.run(
            self.app,
            host=bind_host,
            port=bind_port,
            log_level=self.config.server.log_level.lower(),
        )
