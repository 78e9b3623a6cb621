"""rootfs MCP transport layer - Streamable HTTP support."""

from rootfs_mcp.transport.auth import TokenAuthMiddleware
from rootfs_mcp.transport.http_server import MCPHttpServer

__all__ = ["MCPHttpServer", "TokenAuthMiddleware"]
