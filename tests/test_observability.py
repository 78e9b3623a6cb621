"""Tests for observability module."""

from __future__ import annotations

import json
import logging
import sys
import unittest

from rootfs_mcp.config import ObservabilityConfig
from rootfs_mcp.observability import (
    JsonLogFormatter,
    MetricsCollector,
    generate_correlation_id,
    setup_logging,
)
from rootfs_mcp.tools.fs import FailureKind


def _record(msg: str = "Test", exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestCorrelationId(unittest.TestCase):
    """Test correlation ID generation."""

    def test_generates_8_char_hex_id(self):
        cid = generate_correlation_id()
        self.assertEqual(len(cid), 8)
        int(cid, 16)

    def test_generates_unique_ids(self):
        ids = {generate_correlation_id() for _ in range(100)}
        self.assertEqual(len(ids), 100, "Should generate unique IDs")


class TestJsonLogFormatter(unittest.TestCase):
    """Test JSON log formatting."""

    def test_basic_format(self):
        data = json.loads(JsonLogFormatter().format(_record("Hello world")))

        self.assertEqual(data["level"], "info")
        self.assertEqual(data["logger"], "test")
        self.assertEqual(data["msg"], "Hello world")
        self.assertTrue(data["ts"].endswith("Z"))

    def test_includes_correlation_id(self):
        record = _record()
        record.correlation_id = "abc12345"
        data = json.loads(JsonLogFormatter(include_correlation_id=True).format(record))
        self.assertEqual(data["cid"], "abc12345")

    def test_omits_correlation_id_when_disabled(self):
        record = _record()
        record.correlation_id = "abc12345"
        data = json.loads(JsonLogFormatter(include_correlation_id=False).format(record))
        self.assertNotIn("cid", data)

    def test_includes_extra_fields(self):
        record = _record()
        record.tool = "fs_read"
        record.session = "0f" * 16
        record.latency_ms = 42.5
        record.status = "error"
        record.kind = "containment_violation"

        data = json.loads(JsonLogFormatter().format(record))

        self.assertEqual(data["tool"], "fs_read")
        self.assertEqual(data["session"], "0f" * 16)
        self.assertEqual(data["latency_ms"], 42.5)
        self.assertEqual(data["kind"], "containment_violation")
        self.assertNotIn("error", data)

    def test_exception_info(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record(exc_info=sys.exc_info())
        data = json.loads(JsonLogFormatter().format(record))
        self.assertIn("RuntimeError: boom", data["exc"])


class TestMetricsCollector(unittest.TestCase):
    """Test metrics collection."""

    def setUp(self):
        self.metrics = MetricsCollector()

    def test_records_calls(self):
        self.metrics.record("fs_read", 10.0)
        self.metrics.record("fs_read", 30.0)
        self.metrics.record("fs_write", 5.0, FailureKind.IO_FAILURE)

        stats = self.metrics.snapshot()
        self.assertEqual(stats["total_requests"], 3)
        self.assertEqual(stats["total_errors"], 1)
        self.assertEqual(
            stats["tools"]["fs_read"],
            {"calls": 2, "errors": 0, "avg_ms": 20.0, "min_ms": 10.0, "max_ms": 30.0},
        )
        self.assertEqual(stats["tools"]["fs_write"]["errors"], 1)

    def test_failures_by_kind(self):
        self.metrics.record("fs_read", 1.0, FailureKind.NOT_FOUND)
        self.metrics.record("fs_read", 1.0, FailureKind.NOT_FOUND)
        self.metrics.record("fs_delete", 1.0, FailureKind.FORBIDDEN_TARGET)

        failures = self.metrics.snapshot()["failures"]
        self.assertEqual(set(failures), {k.value for k in FailureKind})
        self.assertEqual(failures["not_found"], 2)
        self.assertEqual(failures["forbidden_target"], 1)
        self.assertEqual(failures["containment_violation"], 0)

    def test_kind_given_as_string(self):
        self.metrics.record("fs_read", 1.0, "wrong_type")
        self.assertEqual(self.metrics.snapshot()["failures"]["wrong_type"], 1)

    def test_error_rate(self):
        self.metrics.record("fs_read", 1.0)
        self.metrics.record("fs_read", 1.0, FailureKind.NOT_FOUND)
        self.assertEqual(self.metrics.snapshot()["error_rate"], 0.5)

    def test_empty(self):
        stats = self.metrics.snapshot()
        self.assertEqual(stats["total_requests"], 0)
        self.assertEqual(stats["error_rate"], 0)
        self.assertEqual(stats["tools"], {})

    def test_reset(self):
        self.metrics.record("fs_read", 1.0, FailureKind.NOT_FOUND)
        self.metrics.reset()
        stats = self.metrics.snapshot()
        self.assertEqual(stats["total_requests"], 0)
        self.assertEqual(stats["failures"]["not_found"], 0)

    def test_disabled_records_nothing(self):
        metrics = MetricsCollector(enabled=False)
        metrics.record("fs_read", 1.0)
        self.assertEqual(metrics.snapshot()["total_requests"], 0)


class TestFromConfig(unittest.TestCase):
    """Metrics switch follows the observability config."""

    def test_disabled_by_default(self):
        self.assertFalse(MetricsCollector.from_config(ObservabilityConfig()).enabled)

    def test_enabled(self):
        config = ObservabilityConfig(enabled=True)
        self.assertTrue(MetricsCollector.from_config(config).enabled)

    def test_metrics_can_be_switched_off(self):
        config = ObservabilityConfig(enabled=True, metrics_enabled=False)
        self.assertFalse(MetricsCollector.from_config(config).enabled)


class TestSetupLogging(unittest.TestCase):
    """Test logging setup."""

    def setUp(self):
        root = logging.getLogger()
        self._saved = (root.handlers[:], root.level)

    def tearDown(self):
        root = logging.getLogger()
        root.handlers[:] = self._saved[0]
        root.setLevel(self._saved[1])
        logging.getLogger("rootfs-mcp").setLevel(logging.NOTSET)

    def test_json_when_enabled(self):
        setup_logging(ObservabilityConfig(enabled=True, log_format="json"))
        (handler,) = logging.getLogger().handlers
        self.assertIsInstance(handler.formatter, JsonLogFormatter)

    def test_text_when_disabled(self):
        logger = setup_logging(ObservabilityConfig(enabled=False, log_level="debug"))
        (handler,) = logging.getLogger().handlers
        self.assertNotIsInstance(handler.formatter, JsonLogFormatter)
        self.assertEqual(logger.name, "rootfs-mcp")
        self.assertEqual(logger.level, logging.DEBUG)

    def test_text_format_requested(self):
        setup_logging(ObservabilityConfig(enabled=True, log_format="text"))
        (handler,) = logging.getLogger().handlers
        self.assertNotIsInstance(handler.formatter, JsonLogFormatter)

    def test_unknown_level_falls_back_to_info(self):
        logger = setup_logging(ObservabilityConfig(log_level="chatty"))
        self.assertEqual(logger.level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
