"""Pytest fixtures for rootfs MCP."""

from pathlib import Path

import pytest

from rootfs_mcp.config import RootFsConfig
from rootfs_mcp.tools.fs import FsOperations, PathGuard

_ENV_VARS = (
    "ALLOWED_BASE",
    "PORT",
    "ROOTFS_ALLOWED_BASE",
    "ROOTFS_PORT",
    "ROOTFS_HOST",
    "ROOTFS_CONFIG",
    "ROOTFS_LOG_LEVEL",
    "ROOTFS_SESSION_IDLE_TIMEOUT",
    "ROOTFS_OBS_ENABLED",
    "ROOTFS_OBS_LOG_FORMAT",
    "ROOTFS_MCP_TOKEN",
    "ROOTFS_URL",
)


@pytest.fixture(autouse=True)
def hermetic_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Autouse: each test runs in its own tmp cwd with no rootfs env leaking in.
    """
    monkeypatch.chdir(tmp_path)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def base(tmp_path: Path) -> Path:
    """The allowed base directory for a test."""
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def ops(base: Path) -> FsOperations:
    return FsOperations(PathGuard(str(base)))


@pytest.fixture
def config(base: Path) -> RootFsConfig:
    cfg = RootFsConfig()
    cfg.fs.allowed_base = str(base)
    cfg.validate()
    return cfg
