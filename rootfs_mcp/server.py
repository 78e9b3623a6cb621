"""
rootfs MCP Server - contained filesystem access for MCP clients.

Every session gets its own low-level MCP ``Server`` (independent handler
state); all of them share one FsOperations bound to the allowed base.

Tools:
- fs_list: Directory listing
- fs_read / read_file: UTF-8 file reading with byte cap
- fs_write / fs_append: Create, overwrite or append
- fs_mkdir: Recursive directory creation
- fs_rename: Move/rename
- fs_delete: Recursive delete (never the base itself)
- fs_copy: File content copy
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from rootfs_mcp import __version__
from rootfs_mcp.config import RootFsConfig
from rootfs_mcp.observability import MetricsCollector, generate_correlation_id
from rootfs_mcp.tools.fs import FailureKind, FsOperations, FsResult, PathGuard

logger = logging.getLogger("rootfs-mcp")

SERVER_NAME = "rootfs-mcp"

Handler = Callable[[dict[str, Any]], Awaitable[FsResult]]


def _path_prop(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _tools(base: str) -> list[Tool]:
    """Tool definitions; descriptions name the allowed base."""
    read_schema = {
        "type": "object",
        "properties": {
            "path": _path_prop("File path to read"),
            "maxBytes": {
                "type": "integer",
                "minimum": 1,
                "description": "Max bytes (default 1 MB)",
            },
        },
        "required": ["path"],
    }
    return [
        Tool(
            name="fs_list",
            description=(
                f"List files and directories. Paths relative to the allowed base ({base}). "
                "Omit path to list the base."
            ),
            inputSchema={
                "type": "object",
                "properties": {"path": _path_prop("Directory path (relative or absolute)")},
            },
        ),
        Tool(
            name="fs_read",
            description=f"Read a UTF-8 text file. Paths relative to the allowed base ({base}).",
            inputSchema=read_schema,
        ),
        Tool(
            name="read_file",
            description="Alias of fs_read - read a UTF-8 text file.",
            inputSchema=read_schema,
        ),
        Tool(
            name="fs_write",
            description="Create or overwrite a file with text content. Parent directories are created.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": _path_prop("File path to write"),
                    "content": {"type": "string", "description": "Full new file content"},
                },
                "required": ["path", "content"],
            },
        ),
        Tool(
            name="fs_append",
            description="Append text to a file, creating it (and parent directories) if absent.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": _path_prop("File path to append to"),
                    "content": {"type": "string", "description": "Text to append"},
                },
                "required": ["path", "content"],
            },
        ),
        Tool(
            name="fs_mkdir",
            description="Create a directory and any missing parents. Existing directories are fine.",
            inputSchema={
                "type": "object",
                "properties": {"path": _path_prop("Directory path to create")},
                "required": ["path"],
            },
        ),
        Tool(
            name="fs_rename",
            description="Move or rename a file or directory. Destination parents are created.",
            inputSchema={
                "type": "object",
                "properties": {
                    "oldPath": _path_prop("Existing path"),
                    "newPath": _path_prop("New path"),
                },
                "required": ["oldPath", "newPath"],
            },
        ),
        Tool(
            name="fs_delete",
            description="Delete a file or a directory recursively. The base itself cannot be deleted.",
            inputSchema={
                "type": "object",
                "properties": {"path": _path_prop("Path to delete")},
                "required": ["path"],
            },
        ),
        Tool(
            name="fs_copy",
            description="Copy a file's content to a new path. Directories cannot be copied.",
            inputSchema={
                "type": "object",
                "properties": {
                    "srcPath": _path_prop("File to copy"),
                    "destPath": _path_prop("Destination file path"),
                },
                "required": ["srcPath", "destPath"],
            },
        ),
    ]


def _missing(args: dict[str, Any], *names: str) -> FsResult | None:
    absent = [n for n in names if args.get(n) is None]
    if absent:
        return FsResult.fail(FailureKind.INVALID_ARGUMENT, f"{' and '.join(absent)} required")
    return None


class ToolFailure(Exception):
    """Raised inside the MCP call_tool handler so the SDK marks the result isError."""

    def __init__(self, result: FsResult):
        kind = result.kind.value if result.kind else "error"
        super().__init__(f"[{kind}] {result.error}")
        self.result = result


class RootFsMcpServer:
    """Operation catalog and dispatch shared by every session."""

    def __init__(self, config: RootFsConfig, operations: FsOperations | None = None):
        self.config = config
        if operations is None:
            guard = PathGuard(config.fs.allowed_base)
            operations = FsOperations(guard, default_max_bytes=config.fs.default_max_bytes)
        self.operations = operations
        self.metrics = MetricsCollector.from_config(config.observability)

        self.tools: list[Tool] = []
        self.tool_handlers: dict[str, Handler] = {}
        self._register_fs_tools()

        logger.info(
            f"rootfs MCP server initialized ({config.config_version}, "
            f"base={self.operations.root}, tools={len(self.tools)})"
        )

    def register_operation(self, tool: Tool, handler: Handler) -> None:
        """Add a named operation with its input schema and async handler."""
        if tool.name in self.tool_handlers:
            raise ValueError(f"Operation already registered: {tool.name}")
        self.tools.append(tool)
        self.tool_handlers[tool.name] = handler

    def _register_fs_tools(self) -> None:
        handlers: dict[str, Handler] = {
            "fs_list": self._handle_list,
            "fs_read": self._handle_read,
            "read_file": self._handle_read,
            "fs_write": self._handle_write,
            "fs_append": self._handle_append,
            "fs_mkdir": self._handle_mkdir,
            "fs_rename": self._handle_rename,
            "fs_delete": self._handle_delete,
            "fs_copy": self._handle_copy,
        }
        for tool in _tools(self.operations.root):
            self.register_operation(tool, handlers[tool.name])

    async def dispatch(
        self, name: str, arguments: dict[str, Any] | None, session_id: str | None = None
    ) -> FsResult:
        """Run one operation with logging and metrics. Never raises."""
        cid = generate_correlation_id()
        extra = {"correlation_id": cid, "tool": name, "session": session_id}
        start_time = time.time()

        logger.info(f"call_tool: {name}", extra=extra)

        handler = self.tool_handlers.get(name)
        if handler is None:
            result = FsResult.fail(FailureKind.INVALID_ARGUMENT, f"Unknown tool: {name}")
        else:
            try:
                result = await handler(arguments or {})
            except Exception as e:
                logger.exception(f"Tool {name} failed: {e}", extra=extra)
                result = FsResult.fail(FailureKind.IO_FAILURE, f"Internal error: {e}")

        latency_ms = (time.time() - start_time) * 1000
        self.metrics.record(name, latency_ms, None if result.success else result.kind)
        kind = result.kind.value if result.kind else None

        logger.info(
            f"call_tool done: {name}",
            extra={
                **extra,
                "latency_ms": latency_ms,
                "status": "ok" if result.success else "error",
                "error": result.error,
                "kind": kind,
            },
        )
        return result

    def create_session_server(self, session_id: str) -> Server:
        """Build the MCP protocol handler for one session."""
        server: Server = Server(SERVER_NAME, version=__version__)

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return available tools."""
            logger.debug("list_tools called", extra={"session": session_id})
            return list(self.tools)

        @server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[TextContent]:
            result = await self.dispatch(name, arguments, session_id=session_id)
            if not result.success:
                raise ToolFailure(result)
            return [TextContent(type="text", text=str(result.data))]

        return server

    async def _handle_list(self, args: dict[str, Any]) -> FsResult:
        return self.operations.list_dir(args.get("path"))

    async def _handle_read(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "path")
        if missing:
            return missing
        return self.operations.read_file(args["path"], max_bytes=args.get("maxBytes"))

    async def _handle_write(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "path", "content")
        if missing:
            return missing
        return self.operations.write_file(args["path"], args["content"])

    async def _handle_append(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "path", "content")
        if missing:
            return missing
        return self.operations.append_file(args["path"], args["content"])

    async def _handle_mkdir(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "path")
        if missing:
            return missing
        return self.operations.make_dir(args["path"])

    async def _handle_rename(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "oldPath", "newPath")
        if missing:
            return missing
        return self.operations.rename(args["oldPath"], args["newPath"])

    async def _handle_delete(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "path")
        if missing:
            return missing
        return self.operations.delete(args["path"])

    async def _handle_copy(self, args: dict[str, Any]) -> FsResult:
        missing = _missing(args, "srcPath", "destPath")
        if missing:
            return missing
        return self.operations.copy_file(args["srcPath"], args["destPath"])
