"""rootfs MCP - expose one directory subtree to MCP clients over Streamable HTTP."""

__version__ = "1.0.0"
