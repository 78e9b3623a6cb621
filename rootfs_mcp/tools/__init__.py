"""rootfs MCP tools - contained filesystem operations."""

from rootfs_mcp.tools.fs import (  # noqa: F401
    DEFAULT_MAX_BYTES,
    FailureKind,
    FsOperations,
    FsResult,
    InvalidPathError,
    PathGuard,
    PathSecurityError,
)
