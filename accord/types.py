"""
Accord — Record Type Definitions

All data structures for requests, contracts, and registry entries.
The on-disk form is a YAML front-matter block followed by a Markdown
body; records.py owns the encode/decode boundary.
"""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now(now: float | None = None) -> str:
    """ISO-8601 UTC timestamp with second precision."""
    ts = time.time() if now is None else now
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> float:
    """Epoch seconds for a stored timestamp; 0.0 when unparseable."""
    if not value:
        return 0.0
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ─── Requests ───────────────────────────────────────────────────────

class RequestStatus(str, enum.Enum):
    """Stored lifecycle states of a request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.FAILED,
})


class RequestType(str, enum.Enum):
    API_ADDITION = "api-addition"
    API_CHANGE = "api-change"
    API_DEPRECATION = "api-deprecation"
    INTERFACE_ADDITION = "interface-addition"
    INTERFACE_CHANGE = "interface-change"
    INTERFACE_DEPRECATION = "interface-deprecation"
    BUG_REPORT = "bug-report"
    QUESTION = "question"
    OTHER = "other"
    COMMAND = "command"


# Types whose completion implies the related contract was edited
CONTRACT_CHANGING_TYPES = frozenset({
    RequestType.API_ADDITION, RequestType.API_CHANGE, RequestType.API_DEPRECATION,
    RequestType.INTERFACE_ADDITION, RequestType.INTERFACE_CHANGE,
    RequestType.INTERFACE_DEPRECATION,
})


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_ORDER = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class Scope(str, enum.Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


KNOWN_COMMANDS = ("status", "scan", "check-inbox", "validate")

REQUEST_ID_PATTERN = re.compile(r"^req-[0-9]+-[a-z0-9-]+$")

_SECTION_RE = re.compile(r"^## (.+?)\s*$", re.MULTILINE)


@dataclass
class Request:
    """
    A unit of cross-boundary work.

    `from_` is the requester and the only party allowed to withdraw it;
    every other mutation belongs to the `to` owner.
    """
    id: str
    from_: str
    to: str
    scope: Scope
    type: RequestType
    priority: Priority
    status: RequestStatus
    created: str
    updated: str
    body: str = ""

    related_contract: str | None = None
    parent_request: str | None = None
    child_requests: list[str] = field(default_factory=list)
    attempts: int = 0
    command: str | None = None
    originated_from: str | None = None
    claimed_by: str | None = None

    # Front-matter keys this schema does not know about, kept verbatim
    extra: dict[str, Any] = field(default_factory=dict)

    # Where the record was read from; not serialized
    path: Path | None = field(default=None, compare=False)

    @staticmethod
    def create(
        request_id: str,
        from_: str,
        to: str,
        body: str,
        type: RequestType = RequestType.OTHER,
        priority: Priority = Priority.MEDIUM,
        scope: Scope = Scope.EXTERNAL,
        now: float | None = None,
        **fields: Any,
    ) -> Request:
        ts = utc_now(now)
        return Request(
            id=request_id,
            from_=from_,
            to=to,
            scope=scope,
            type=type,
            priority=priority,
            status=RequestStatus.PENDING,
            created=ts,
            updated=ts,
            body=body,
            **fields,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_command(self) -> bool:
        return self.type == RequestType.COMMAND

    @property
    def filename(self) -> str:
        return f"{self.id}.md"

    def sort_key(self) -> tuple[int, float]:
        """Critical first, then oldest first."""
        return PRIORITY_ORDER[self.priority], parse_timestamp(self.created)

    def section(self, title: str) -> str | None:
        """Text of `## {title}` (stripped), or None if absent."""
        return get_section(self.body, title)

    def append_section(self, title: str, text: str) -> None:
        self.body = append_section(self.body, title, text)


def get_section(body: str, title: str) -> str | None:
    matches = list(_SECTION_RE.finditer(body))
    for i, m in enumerate(matches):
        if m.group(1).strip() == title:
            end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
            return body[m.end():end].strip()
    return None


def append_section(body: str, title: str, text: str) -> str:
    return f"{body.rstrip()}\n\n## {title}\n\n{text.strip()}\n"


# ─── Contracts ──────────────────────────────────────────────────────

class ContractStatus(str, enum.Enum):
    DRAFT = "draft"
    STABLE = "stable"
    PROPOSED = "proposed"
    DEPRECATED = "deprecated"


CONTRACT_TRANSITIONS: dict[ContractStatus, set[ContractStatus]] = {
    ContractStatus.DRAFT: {ContractStatus.STABLE, ContractStatus.PROPOSED, ContractStatus.DEPRECATED},
    ContractStatus.STABLE: {ContractStatus.PROPOSED, ContractStatus.DEPRECATED},
    ContractStatus.PROPOSED: {ContractStatus.STABLE, ContractStatus.DEPRECATED},
    ContractStatus.DEPRECATED: set(),
}


class ContractFormat(str, enum.Enum):
    """Service boundaries carry OpenAPI; module boundaries carry Markdown."""
    OPENAPI = "openapi"
    INTERNAL = "internal"


@dataclass
class Contract:
    """
    The declared capability surface of one owner.

    For OPENAPI contracts `document` is the parsed YAML and the lifecycle
    fields live under `info`; for INTERNAL contracts `document` is the
    front-matter and `body` the Markdown text.
    """
    owner: str
    format: ContractFormat
    status: ContractStatus
    document: dict[str, Any]
    request: str | None = None
    body: str = ""
    path: Path | None = field(default=None, compare=False)

    @property
    def is_proposed(self) -> bool:
        return self.status == ContractStatus.PROPOSED and bool(self.request)


# ─── Registry ───────────────────────────────────────────────────────

@dataclass
class RegistryEntry:
    """Static description of one owner's responsibility. Read-only here."""
    name: str
    type: str = "service"         # service | module
    directory: str = ""
    language: str = ""
    owns: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    body: str = ""
    path: Path | None = field(default=None, compare=False)
