"""Logging and in-memory call metrics for the rootfs MCP server."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from threading import Lock
import time
from typing import Any
import uuid

from rootfs_mcp.config import ObservabilityConfig
from rootfs_mcp.tools.fs import FailureKind

TEXT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# LogRecord attribute -> JSON key; set through ``extra=`` by the dispatcher
_RECORD_FIELDS = {
    "tool": "tool",
    "session": "session",
    "latency_ms": "latency_ms",
    "status": "status",
    "error": "error",
    "kind": "kind",
}


def generate_correlation_id() -> str:
    """Short random id tying the log lines of one tool call together."""
    return uuid.uuid4().hex[:8]


class JsonLogFormatter(logging.Formatter):
    """One compact JSON object per log line."""

    def __init__(self, include_correlation_id: bool = True):
        super().__init__()
        self.include_correlation_id = include_correlation_id

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        line: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        cid = getattr(record, "correlation_id", None)
        if self.include_correlation_id and cid:
            line["cid"] = cid
        line.update(
            (key, getattr(record, attr))
            for attr, key in _RECORD_FIELDS.items()
            if hasattr(record, attr)
        )
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


@dataclass
class ToolStats:
    calls: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: float | None = None
    max_ms: float = 0.0

    def observe(self, latency_ms: float, failed: bool) -> None:
        self.calls += 1
        self.errors += failed
        self.total_ms += latency_ms
        self.min_ms = latency_ms if self.min_ms is None else min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    def as_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "errors": self.errors,
            "avg_ms": round(self.total_ms / self.calls, 2) if self.calls else 0.0,
            "min_ms": round(self.min_ms or 0.0, 2),
            "max_ms": round(self.max_ms, 2),
        }


class MetricsCollector:
    """
    Per-tool call statistics plus a count of failed calls by FailureKind.

    Thread-safe. When disabled, ``record`` is a no-op and snapshots stay empty.

    Example:
        metrics = MetricsCollector.from_config(config.observability)
        metrics.record("fs_read", 3.2, FailureKind.NOT_FOUND)
        metrics.snapshot()["failures"]["not_found"]  # 1
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = Lock()
        self.reset()

    @classmethod
    def from_config(cls, config: ObservabilityConfig) -> MetricsCollector:
        return cls(enabled=config.enabled and config.metrics_enabled)

    def record(self, tool: str, latency_ms: float, kind: FailureKind | None = None) -> None:
        """Record one finished call; ``kind`` is None for a success."""
        if not self.enabled:
            return
        with self._lock:
            self._tools.setdefault(tool, ToolStats()).observe(latency_ms, kind is not None)
            if kind is not None:
                self._failures[FailureKind(kind)] += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            total = sum(s.calls for s in self._tools.values())
            errors = sum(self._failures.values())
            return {
                "uptime_s": round(time.time() - self._started, 1),
                "total_requests": total,
                "total_errors": errors,
                "error_rate": round(errors / total, 4) if total else 0.0,
                "failures": {k.value: self._failures[k] for k in FailureKind},
                "tools": {name: s.as_dict() for name, s in sorted(self._tools.items())},
            }

    def reset(self) -> None:
        with self._lock:
            self._tools: dict[str, ToolStats] = {}
            self._failures: Counter[FailureKind] = Counter()
            self._started = time.time()


def setup_logging(config: ObservabilityConfig, logger_name: str = "rootfs-mcp") -> logging.Logger:
    """
    Install the single stderr handler on the root logger.

    JSON lines when observability is enabled with ``log_format = "json"``,
    plain text otherwise. Returns the server logger.
    """
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler()
    if config.enabled and config.log_format == "json":
        handler.setFormatter(JsonLogFormatter(config.include_correlation_id))
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    return logger
