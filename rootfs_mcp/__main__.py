"""Run with: python -m rootfs_mcp serve --root /path/to/dir"""

from rootfs_mcp.cli import main

main()
