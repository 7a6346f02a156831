"""
Accord — Structured Logging Tests

Tests:
  - Every line is valid JSON with the required fields
  - Structured fields from daemon events are merged into the entry
  - Level filtering hides DEBUG events at INFO
  - Exceptions carry type and message
  - Reconfiguring does not duplicate handlers
  - log_file receives the same lines
"""

import io
import json
import logging
import os
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from accord.logging import DaemonLogger, configure_logging, get_logger


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestLogging(unittest.TestCase):

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level="DEBUG", stream=self.stream, service_name="accord.payments")

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())

    def test_entry_schema(self):
        get_logger("sync").info("Pulled %d request(s)", 2)
        entry = _lines(self.stream)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name"):
            self.assertIn(key, entry)
        self.assertEqual(entry["logger"], "accord.sync")
        self.assertEqual(entry["message"], "Pulled 2 request(s)")
        self.assertEqual(entry["service.name"], "accord.payments")

    def test_module_loggers_share_handler(self):
        logging.getLogger("accord.records").warning("Skipping bad file")
        self.assertEqual(_lines(self.stream)[0]["level"], "WARNING")

    def test_daemon_events_structured(self):
        events = DaemonLogger(service="payments", run_id="run-1")
        events.on_claim("req-001-add-refunds", attempt=1)
        events.on_escalation("req-001-add-refunds", "req-escalation-x", "timeout (600s)")
        claim, escalation = _lines(self.stream)
        self.assertEqual(claim["action"], "claim")
        self.assertEqual(claim["request_id"], "req-001-add-refunds")
        self.assertEqual(claim["service"], "payments")
        self.assertEqual(claim["run_id"], "run-1")
        self.assertEqual(escalation["level"], "WARNING")
        self.assertEqual(escalation["escalation_id"], "req-escalation-x")

    def test_level_filtering(self):
        configure_logging(level="INFO", stream=self.stream)
        events = DaemonLogger(service="payments")
        events.on_tick_start(1)
        events.on_tick_end(1, processed=0, failed=0, elapsed_s=0.1)
        events.on_tick_end(2, processed=1, failed=0, elapsed_s=0.1)
        entries = _lines(self.stream)
        self.assertEqual([e["action"] for e in entries], ["tick_end"])
        self.assertEqual(entries[0]["processed"], 1)

    def test_worker_error_truncated(self):
        DaemonLogger(service="payments").on_worker_result(
            "req-001-add-refunds", "failure", 1.234, error="x" * 2000)
        entry = _lines(self.stream)[0]
        self.assertEqual(len(entry["error"]), 500)
        self.assertEqual(entry["elapsed_s"], 1.23)

    def test_exception_fields(self):
        try:
            raise ValueError("bad tick")
        except ValueError:
            get_logger("daemon").exception("Tick failed")
        entry = _lines(self.stream)[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad tick")

    def test_reconfigure_no_duplicates(self):
        configure_logging(level="DEBUG", stream=self.stream)
        get_logger().info("once")
        self.assertEqual(len(_lines(self.stream)), 1)

    def test_log_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "logs", "daemon-payments.log")
            configure_logging(level="INFO", stream=self.stream, log_file=path)
            get_logger("daemon").info("Daemon started")
            configure_logging(level="WARNING", stream=io.StringIO())
            with open(path, encoding="utf-8") as f:
                entry = json.loads(f.readline())
        self.assertEqual(entry["message"], "Daemon started")


if __name__ == "__main__":
    unittest.main()
