"""rootfs MCP configuration loader - reads from rootfs.toml with ENV overrides."""  # noqa: I001

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import Any, cast

_TRUTHY = ("1", "true", "yes")


@dataclass
class ServerConfig:
    """Server transport settings."""

    host: str = "127.0.0.1"
    port: int = 3333
    log_level: str = "info"
    # Answer POSTs with plain JSON instead of an SSE stream
    json_response: bool = False

    def validate(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError(f"Invalid port: {self.port}")
        if self.log_level.lower() not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Invalid log level: {self.log_level}")


@dataclass
class AuthConfig:
    """Authentication settings."""

    mode: str = "none"  # "none" | "token"
    header: str = "X-RootFS-Token"
    token_env: str = "ROOTFS_MCP_TOKEN"

    def validate(self) -> None:
        if self.mode not in ("none", "token"):
            raise ValueError(f"Invalid auth mode: {self.mode}")
        if self.mode == "token" and not os.getenv(self.token_env):
            raise ValueError(f"Auth mode 'token' requires {self.token_env} to be set")


@dataclass
class FsConfig:
    """Filesystem tool settings."""

    allowed_base: str | None = None
    default_max_bytes: int = 1_048_576

    def validate(self) -> None:
        if not self.allowed_base:
            raise ValueError(
                "allowed_base is required (set ALLOWED_BASE or [rootfs.fs] allowed_base)"
            )
        self.allowed_base = os.path.normpath(os.path.abspath(self.allowed_base))
        if not Path(self.allowed_base).is_dir():
            raise ValueError(f"allowed_base is not a directory: {self.allowed_base}")
        if self.default_max_bytes <= 0:
            raise ValueError("default_max_bytes must be positive")


@dataclass
class SessionsConfig:
    """Session lifecycle settings."""

    # A bare GET /mcp with no known session mints one
    create_on_stream_open: bool = True
    # 0 disables idle expiry
    idle_timeout_s: float = 0
    reap_interval_s: float = 30

    def validate(self) -> None:
        if self.idle_timeout_s < 0:
            raise ValueError("idle_timeout_s must not be negative")
        if self.reap_interval_s <= 0:
            raise ValueError("reap_interval_s must be positive")


@dataclass
class LimitsConfig:
    """Request limits."""

    max_request_bytes: int = 4 * 1024 * 1024

    def validate(self) -> None:
        if self.max_request_bytes <= 0:
            raise ValueError("max_request_bytes must be positive")


@dataclass
class ObservabilityConfig:
    """Observability settings."""

    enabled: bool = False
    log_format: str = "json"  # "json" | "text"
    log_level: str = "info"
    include_correlation_id: bool = True
    metrics_enabled: bool = True

    def validate(self) -> None:
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log format: {self.log_format}")


@dataclass
class RootFsConfig:
    """Root configuration."""

    config_version: str = "v1"
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    fs: FsConfig = field(default_factory=FsConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def validate(self) -> None:
        self.server.validate()
        self.auth.validate()
        self.fs.validate()
        self.sessions.validate()
        self.limits.validate()
        self.observability.validate()


def _apply_env_overrides(cfg: RootFsConfig) -> RootFsConfig:
    """Apply environment variable overrides. ENV beats TOML."""
    # ALLOWED_BASE is the historical name; ROOTFS_ALLOWED_BASE wins if both are set
    base = os.getenv("ROOTFS_ALLOWED_BASE") or os.getenv("ALLOWED_BASE")
    if base:
        cfg.fs.allowed_base = base

    port = os.getenv("ROOTFS_PORT") or os.getenv("PORT")
    if port:
        try:
            cfg.server.port = int(port)
        except ValueError as e:
            raise ValueError(f"Invalid port: {port}") from e

    if os.getenv("ROOTFS_HOST"):
        cfg.server.host = os.getenv("ROOTFS_HOST", cfg.server.host)

    if os.getenv("ROOTFS_LOG_LEVEL"):
        cfg.server.log_level = os.getenv("ROOTFS_LOG_LEVEL", cfg.server.log_level)
        cfg.observability.log_level = cfg.server.log_level

    if os.getenv("ROOTFS_SESSION_IDLE_TIMEOUT"):
        cfg.sessions.idle_timeout_s = float(os.getenv("ROOTFS_SESSION_IDLE_TIMEOUT", "0"))

    # Observability overrides
    if os.getenv("ROOTFS_OBS_ENABLED"):
        cfg.observability.enabled = os.getenv("ROOTFS_OBS_ENABLED", "").lower() in _TRUTHY
    if os.getenv("ROOTFS_OBS_LOG_FORMAT"):
        cfg.observability.log_format = os.getenv(
            "ROOTFS_OBS_LOG_FORMAT", cfg.observability.log_format
        )

    return cfg


def _apply_toml(cfg: RootFsConfig, data: dict[str, Any]) -> None:
    root = data.get("rootfs", {})
    cfg.config_version = root.get("config_version", cfg.config_version)

    srv = root.get("server", {})
    cfg.server.host = srv.get("host", cfg.server.host)
    cfg.server.port = srv.get("port", cfg.server.port)
    cfg.server.log_level = srv.get("log_level", cfg.server.log_level)
    cfg.server.json_response = srv.get("json_response", cfg.server.json_response)

    auth = root.get("auth", {})
    cfg.auth.mode = auth.get("mode", cfg.auth.mode)
    cfg.auth.header = auth.get("header", cfg.auth.header)
    cfg.auth.token_env = auth.get("token_env", cfg.auth.token_env)

    fs = root.get("fs", {})
    cfg.fs.allowed_base = fs.get("allowed_base", cfg.fs.allowed_base)
    cfg.fs.default_max_bytes = fs.get("default_max_bytes", cfg.fs.default_max_bytes)

    sessions = root.get("sessions", {})
    cfg.sessions.create_on_stream_open = sessions.get(
        "create_on_stream_open", cfg.sessions.create_on_stream_open
    )
    cfg.sessions.idle_timeout_s = sessions.get("idle_timeout_s", cfg.sessions.idle_timeout_s)
    cfg.sessions.reap_interval_s = sessions.get("reap_interval_s", cfg.sessions.reap_interval_s)

    limits = root.get("limits", {})
    cfg.limits.max_request_bytes = limits.get("max_request_bytes", cfg.limits.max_request_bytes)

    obs = root.get("observability", {})
    cfg.observability.enabled = obs.get("enabled", cfg.observability.enabled)
    cfg.observability.log_format = obs.get("log_format", cfg.observability.log_format)
    cfg.observability.log_level = obs.get("log_level", cfg.observability.log_level)
    cfg.observability.include_correlation_id = obs.get(
        "include_correlation_id", cfg.observability.include_correlation_id
    )
    cfg.observability.metrics_enabled = obs.get(
        "metrics_enabled", cfg.observability.metrics_enabled
    )


def load_config(config_path: str | Path | None = None, validate: bool = True) -> RootFsConfig:
    """
    Load config from rootfs.toml with ENV overrides.

    Precedence: ENV → TOML → defaults

    Args:
        config_path: Path to rootfs.toml. If None, searches:
            1. ROOTFS_CONFIG env var
            2. ./rootfs.toml
        validate: Pass False for client-side commands that only need auth settings

    Returns:
        RootFsConfig (validated unless validate=False).

    Raises:
        ValueError: If the merged config is invalid (e.g. no allowed base)
    """
    if config_path is None:
        if os.getenv("ROOTFS_CONFIG"):
            config_path = Path(cast(str, os.getenv("ROOTFS_CONFIG")))
        else:
            config_path = Path("rootfs.toml")
    else:
        config_path = Path(config_path)

    cfg = RootFsConfig()

    if config_path.exists():
        with open(config_path, "rb") as f:
            _apply_toml(cfg, tomllib.load(f))

    cfg = _apply_env_overrides(cfg)
    if validate:
        cfg.validate()

    return cfg
