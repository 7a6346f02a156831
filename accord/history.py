"""
Accord — Transition History

Append-only audit trail of request transitions, stored next to the
records it describes so it travels with the repository:

    comms/history/{YYYY-MM-DD}-{actor}.jsonl

One JSON object per line. Lines are never rewritten or removed; the
file name scopes writers so two owners never append to the same file.

Usage:
    history = HistoryLog(store.history_dir)
    history.record("req-001-add-users", "pending", "approved", actor="alice")
    events = history.get_trail("req-001-add-users")
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from accord.types import utc_now

logger = logging.getLogger("accord.history")


@dataclass
class HistoryEntry:
    """A single audit trail line."""
    ts: str
    request_id: str
    from_status: str
    to_status: str
    actor: str
    detail: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        entry = {
            "ts": self.ts,
            "request_id": self.request_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
        }
        if self.detail:
            entry["detail"] = self.detail
        entry.update(self.extra)
        return entry

    @staticmethod
    def from_dict(data: dict[str, Any]) -> HistoryEntry:
        known = {"ts", "request_id", "from_status", "to_status", "actor", "detail"}
        return HistoryEntry(
            ts=str(data.get("ts", "")),
            request_id=str(data.get("request_id", "")),
            from_status=str(data.get("from_status", "")),
            to_status=str(data.get("to_status", "")),
            actor=str(data.get("actor", "")),
            detail=str(data.get("detail", "")),
            extra={k: v for k, v in data.items() if k not in known},
        )


class HistoryLog:
    """Append-only JSONL history under one directory."""

    def __init__(self, history_dir: str | Path):
        self.history_dir = Path(history_dir)
        self._lock = threading.Lock()

    def _file_for(self, actor: str) -> Path:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        safe_actor = actor.replace("/", "_") or "unknown"
        return self.history_dir / f"{day}-{safe_actor}.jsonl"

    def record(
        self,
        request_id: str,
        from_status: str,
        to_status: str,
        actor: str,
        detail: str = "",
        **extra: Any,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            ts=utc_now(),
            request_id=request_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            detail=detail,
            extra=extra,
        )
        with self._lock:
            self.history_dir.mkdir(parents=True, exist_ok=True)
            with open(self._file_for(actor), "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        logger.debug("History: %s %s → %s (%s)", request_id, from_status, to_status, actor)
        return entry

    def entries(self) -> list[HistoryEntry]:
        """Every entry, ordered by file name then line."""
        found: list[HistoryEntry] = []
        if not self.history_dir.is_dir():
            return found
        for path in sorted(self.history_dir.glob("*.jsonl")):
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        found.append(HistoryEntry.from_dict(json.loads(line)))
                    except json.JSONDecodeError:
                        logger.warning("Unreadable history line in %s", path)
        return found

    def get_trail(self, request_id: str) -> list[HistoryEntry]:
        return [e for e in self.entries() if e.request_id == request_id]

    def withdrawn(self, actor: str) -> list[HistoryEntry]:
        """Withdrawals made by `actor`; the sync engine replays them on the hub."""
        return [e for e in self.entries() if e.to_status == "withdrawn" and e.actor == actor]
