"""
Accord — Structured Logging

JSON line logs for the CLI and the dispatch daemon. Every module logs
through `logging.getLogger("accord.<module>")`; configure_logging()
attaches one JSON handler to the `accord` namespace.

Levels: DEBUG (payloads, skipped records), INFO (transitions, sync),
WARNING (retries, failures).

Usage:
    from accord.logging import DaemonLogger, configure_logging

    configure_logging(level="INFO")
    events = DaemonLogger(service="payments")
    events.on_tick_start(tick=1)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "accord"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("ACCORD_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "accord",
    log_file: str | None = None,
) -> logging.Logger:
    """
    Configure the accord logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
        log_file: Optional file receiving the same lines (daemon mode)
    """
    logger = logging.getLogger("accord")
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric)

    # Avoid duplicate handlers on reconfigure
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("accord."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    formatter = JSONFormatter(service_name=service_name)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(numeric)
    logger.addHandler(handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(numeric)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the accord namespace."""
    if name:
        return logging.getLogger(f"accord.{name}")
    return logging.getLogger("accord")


# ═══════════════════════════════════════════════════════════════════
# Daemon Event Logger
# ═══════════════════════════════════════════════════════════════════

class DaemonLogger:
    """
    Structured events for one daemon instance.

    Every entry carries the service and a run_id so the lines of one
    daemon can be separated from its siblings in a shared sink.
    """

    def __init__(self, service: str = "", run_id: str | None = None):
        self.service = service
        self.run_id = run_id or uuid.uuid4().hex[:16]
        self._logger = get_logger("daemon")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"service": self.service, "run_id": self.run_id,
                      "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_tick_start(self, tick: int) -> None:
        self._emit(logging.DEBUG, "tick_start", tick=tick)

    def on_tick_end(self, tick: int, processed: int, failed: int, elapsed_s: float) -> None:
        level = logging.INFO if processed or failed else logging.DEBUG
        self._emit(level, "tick_end", tick=tick, processed=processed,
                   failed=failed, elapsed_s=round(elapsed_s, 2))

    def on_sync(self, direction: str, status: str, **fields) -> None:
        level = logging.WARNING if status != "ok" else logging.DEBUG
        self._emit(level, f"sync_{direction}", status=status, **fields)

    def on_claim(self, request_id: str, attempt: int) -> None:
        self._emit(logging.INFO, "claim", request_id=request_id, attempt=attempt)

    def on_command(self, request_id: str, command: str) -> None:
        self._emit(logging.INFO, "command", request_id=request_id, command=command)

    def on_worker_result(self, request_id: str, status: str, elapsed_s: float,
                         error: str = "") -> None:
        level = logging.INFO if status == "success" else logging.WARNING
        fields = {"request_id": request_id, "status": status,
                  "elapsed_s": round(elapsed_s, 2)}
        if error:
            fields["error"] = error[:500]
        self._emit(level, "worker_result", **fields)

    def on_transition(self, request_id: str, from_status: str, to_status: str) -> None:
        self._emit(logging.INFO, "transition", request_id=request_id,
                   from_status=from_status, to_status=to_status)

    def on_conflict(self, request_id: str, paths: list[str]) -> None:
        self._emit(logging.WARNING, "conflict", request_id=request_id, paths=paths)

    def on_escalation(self, request_id: str, escalation_id: str, reason: str) -> None:
        self._emit(logging.WARNING, "escalation", request_id=request_id,
                   escalation_id=escalation_id, reason=reason[:500])
