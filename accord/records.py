"""
Accord — Record Store

File-backed persistence for requests, contracts, and registry entries.
Every record is a YAML front-matter block plus a Markdown body (OpenAPI
contracts are plain YAML documents). Decoding goes through a typed schema
and rejects malformed files with RecordParseError instead of guessing.

Directory layout under a root (`<repo>/.accord` or a hub clone):

    comms/inbox/{owner}/req-*.md    requests addressed to {owner}
    comms/archive/req-*.md          terminal requests
    comms/history/*.jsonl           transition audit trail
    contracts/{owner}.yaml          service-level contracts (OpenAPI)
    contracts/internal/{module}.md  module-level contracts (own)
    contracts/internal/{owner}/*.md module-level contracts (mirrored)
    registry/{name}.md              registry entries
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator

import yaml

from accord.errors import ConflictError, RecordParseError, StateError
from accord.types import (
    KNOWN_COMMANDS,
    REQUEST_ID_PATTERN,
    TIMESTAMP_FORMAT,
    Contract,
    ContractFormat,
    ContractStatus,
    Priority,
    RegistryEntry,
    Request,
    RequestStatus,
    RequestType,
    Scope,
    get_section,
)

logger = logging.getLogger("accord.records")

REQUEST_GLOB = "req-*.md"

_REQUIRED_REQUEST_FIELDS = (
    "id", "from", "to", "scope", "type", "priority", "status", "created", "updated",
)
_OPTIONAL_REQUEST_FIELDS = (
    "related_contract", "parent_request", "child_requests", "attempts",
    "command", "originated_from", "claimed_by",
)
_CONFLICT_MARKERS = ("<<<<<<< ", ">>>>>>> ")


# ═══════════════════════════════════════════════════════════════════
# Front-matter Codec
# ═══════════════════════════════════════════════════════════════════

def _scalar(value: Any) -> Any:
    """YAML loads bare timestamps as datetime; keep them as strings."""
    if isinstance(value, datetime):
        return value.strftime(TIMESTAMP_FORMAT)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _check_conflict_markers(text: str, path: str) -> None:
    for line in text.splitlines():
        if line.startswith(_CONFLICT_MARKERS):
            raise ConflictError("unresolved merge conflict in record", [path])


def split_frontmatter(text: str, path: str = "<memory>") -> tuple[dict[str, Any], str]:
    """Split `---` delimited front-matter from the body."""
    _check_conflict_markers(text, path)
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        raise RecordParseError(path, ["missing YAML front-matter (no opening ---)"])
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            raw = "".join(lines[1:i])
            body = "".join(lines[i + 1:])
            break
    else:
        raise RecordParseError(path, ["unterminated YAML front-matter"])

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise RecordParseError(path, [f"invalid YAML front-matter: {e}"]) from e
    if not isinstance(data, dict):
        raise RecordParseError(path, ["front-matter is not a mapping"])
    return {str(k): _scalar(v) for k, v in data.items()}, body.strip("\n")


def join_frontmatter(data: dict[str, Any], body: str) -> str:
    head = yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)
    text = f"---\n{head}---\n"
    if body.strip():
        text += f"\n{body.strip()}\n"
    return text


# ═══════════════════════════════════════════════════════════════════
# Requests
# ═══════════════════════════════════════════════════════════════════

def _enum(cls, value: Any, name: str, errors: list[str]):
    try:
        return cls(str(value))
    except ValueError:
        allowed = ", ".join(m.value for m in cls)
        errors.append(f"invalid {name}: {value!r} (expected one of: {allowed})")
        return None


def decode_request(text: str, path: str | Path = "<memory>") -> Request:
    """Parse a request file. Raises RecordParseError listing every problem."""
    path = str(path)
    fm, body = split_frontmatter(text, path)
    errors: list[str] = []

    for key in _REQUIRED_REQUEST_FIELDS:
        if fm.get(key) in (None, ""):
            errors.append(f"missing required field: {key}")
    if errors:
        raise RecordParseError(path, errors)

    scope = _enum(Scope, fm["scope"], "scope", errors)
    rtype = _enum(RequestType, fm["type"], "type", errors)
    priority = _enum(Priority, fm["priority"], "priority", errors)
    status = _enum(RequestStatus, fm["status"], "status", errors)

    attempts = fm.get("attempts") or 0
    try:
        attempts = int(attempts)
    except (TypeError, ValueError):
        errors.append(f"attempts is not an integer: {attempts!r}")
        attempts = 0

    children = fm.get("child_requests") or []
    if isinstance(children, str):
        children = [children]
    if not isinstance(children, list):
        errors.append("child_requests must be a list")
        children = []

    if rtype == RequestType.COMMAND and not fm.get("command"):
        errors.append("type: command requires a 'command' field")

    if errors:
        raise RecordParseError(path, errors)

    known = set(_REQUIRED_REQUEST_FIELDS) | set(_OPTIONAL_REQUEST_FIELDS)
    return Request(
        id=str(fm["id"]),
        from_=str(fm["from"]),
        to=str(fm["to"]),
        scope=scope,
        type=rtype,
        priority=priority,
        status=status,
        created=str(fm["created"]),
        updated=str(fm["updated"]),
        body=body,
        related_contract=_opt_str(fm.get("related_contract")),
        parent_request=_opt_str(fm.get("parent_request")),
        child_requests=[str(c) for c in children],
        attempts=attempts,
        command=_opt_str(fm.get("command")),
        originated_from=_opt_str(fm.get("originated_from")),
        claimed_by=_opt_str(fm.get("claimed_by")),
        extra={k: v for k, v in fm.items() if k not in known},
        path=Path(path) if path != "<memory>" else None,
    )


def _opt_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


def encode_request(req: Request) -> str:
    fm: dict[str, Any] = {
        "id": req.id,
        "from": req.from_,
        "to": req.to,
        "scope": req.scope.value,
        "type": req.type.value,
        "priority": req.priority.value,
        "status": req.status.value,
        "created": req.created,
        "updated": req.updated,
    }
    if req.command:
        fm["command"] = req.command
    if req.related_contract:
        fm["related_contract"] = req.related_contract
    if req.parent_request:
        fm["parent_request"] = req.parent_request
    if req.child_requests:
        fm["child_requests"] = list(req.child_requests)
    if req.originated_from:
        fm["originated_from"] = req.originated_from
    if req.attempts:
        fm["attempts"] = req.attempts
    if req.claimed_by:
        fm["claimed_by"] = req.claimed_by
    fm.update(req.extra)
    return join_frontmatter(fm, req.body)


def validate_request(req: Request) -> tuple[list[str], list[str]]:
    """
    Semantic checks beyond the schema. Returns (errors, warnings).

    Errors: missing `## What`; rejected without a reason.
    Warnings: non-conventional id, missing optional sections, unknown command.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not REQUEST_ID_PATTERN.match(req.id):
        warnings.append(f"id '{req.id}' does not match pattern req-{{NNN}}-{{description}}")
    if req.section("What") is None:
        errors.append("missing '## What' section")
    for title in ("Proposed Change", "Why"):
        if req.section(title) is None:
            warnings.append(f"missing '## {title}' section")
    if req.status == RequestStatus.REJECTED and not req.section("Rejection Reason"):
        errors.append("rejected request missing '## Rejection Reason' section")
    if req.is_command and req.command not in KNOWN_COMMANDS:
        warnings.append(
            f"non-standard command: {req.command} (expected: {', '.join(KNOWN_COMMANDS)})"
        )
    return errors, warnings


# ═══════════════════════════════════════════════════════════════════
# Contracts
# ═══════════════════════════════════════════════════════════════════

def decode_contract(text: str, owner: str, fmt: ContractFormat,
                    path: str | Path = "<memory>") -> Contract:
    path = str(path)
    if fmt == ContractFormat.OPENAPI:
        _check_conflict_markers(text, path)
        try:
            doc = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise RecordParseError(path, [f"invalid YAML: {e}"]) from e
        if not isinstance(doc, dict):
            raise RecordParseError(path, ["contract is not a mapping"])
        info = doc.get("info") or {}
        raw_status = info.get("x-accord-status", ContractStatus.DRAFT.value)
        request = info.get("x-accord-request")
        body = ""
    else:
        doc, body = split_frontmatter(text, path)
        raw_status = doc.get("status", ContractStatus.DRAFT.value)
        request = doc.get("x-accord-request")

    errors: list[str] = []
    status = _enum(ContractStatus, raw_status, "contract status", errors)
    if errors:
        raise RecordParseError(path, errors)
    return Contract(
        owner=owner,
        format=fmt,
        status=status,
        document=doc,
        request=_opt_str(request),
        body=body,
        path=Path(path) if path != "<memory>" else None,
    )


def encode_contract(contract: Contract) -> str:
    doc = dict(contract.document)
    if contract.format == ContractFormat.OPENAPI:
        info = dict(doc.get("info") or {})
        info["x-accord-status"] = contract.status.value
        if contract.request:
            info["x-accord-request"] = contract.request
        else:
            info.pop("x-accord-request", None)
        doc["info"] = info
        return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)

    doc["status"] = contract.status.value
    if contract.request:
        doc["x-accord-request"] = contract.request
    else:
        doc.pop("x-accord-request", None)
    return join_frontmatter(doc, contract.body)


def validate_contract(contract: Contract) -> list[str]:
    """Structural presence checks only; content semantics are out of scope."""
    errors = []
    if contract.format == ContractFormat.OPENAPI:
        for key in ("openapi", "info", "paths"):
            if key not in contract.document:
                errors.append(f"missing top-level '{key}'")
    else:
        for key in ("id", "module", "language", "type", "status"):
            if key not in contract.document:
                errors.append(f"missing required front-matter field: {key}")
        for title in ("Interface", "Behavioral Contract", "Used By"):
            if get_section(contract.body, title) is None:
                errors.append(f"missing '## {title}' section")
        if "```" not in contract.body:
            errors.append("no code block found in Interface section")
    return errors


# ═══════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════

def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def decode_registry(text: str, path: str | Path = "<memory>") -> RegistryEntry:
    path = str(path)
    fm, body = split_frontmatter(text, path)
    name = fm.get("name") or Path(path).stem
    return RegistryEntry(
        name=str(name),
        type=str(fm.get("type") or "service"),
        directory=str(fm.get("directory") or ""),
        language=str(fm.get("language") or ""),
        owns=_str_list(fm.get("owns")),
        capabilities=_str_list(fm.get("capabilities")),
        depends_on=_str_list(fm.get("depends_on")),
        body=body,
        path=Path(path) if path != "<memory>" else None,
    )


# ═══════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════

def atomic_write(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class RecordStore:
    """Read/write access to the record tree rooted at `root`."""

    def __init__(self, root: str | Path):
        self.root = Path(root).absolute()

    # ── Paths ───────────────────────────────────────────────────

    @property
    def inbox_root(self) -> Path:
        return self.root / "comms" / "inbox"

    @property
    def archive_dir(self) -> Path:
        return self.root / "comms" / "archive"

    @property
    def history_dir(self) -> Path:
        return self.root / "comms" / "history"

    @property
    def contracts_dir(self) -> Path:
        return self.root / "contracts"

    @property
    def internal_dir(self) -> Path:
        return self.root / "contracts" / "internal"

    @property
    def registry_dir(self) -> Path:
        return self.root / "registry"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def inbox(self, owner: str) -> Path:
        return self.inbox_root / owner

    def inbox_owners(self) -> list[str]:
        if not self.inbox_root.is_dir():
            return []
        return sorted(p.name for p in self.inbox_root.iterdir() if p.is_dir())

    # ── Requests ────────────────────────────────────────────────

    def read_request(self, path: str | Path) -> Request:
        path = Path(path)
        return decode_request(path.read_text(encoding="utf-8"), path)

    def write_request(self, req: Request, path: str | Path | None = None) -> Path:
        """Write a request to `path`, its current location, or the target inbox."""
        if path is None:
            path = req.path or self.inbox(req.to) / req.filename
        path = Path(path)
        atomic_write(path, encode_request(req))
        req.path = path
        return path

    def iter_requests(self, directory: Path,
                      errors: list[Exception] | None = None) -> Iterator[Request]:
        """
        Yield parseable requests in `directory`.

        Malformed or conflicted files are logged and skipped so one bad
        record never blocks the rest; pass `errors` to collect them.
        """
        if not directory.is_dir():
            return
        for path in sorted(directory.glob(REQUEST_GLOB)):
            try:
                yield self.read_request(path)
            except (RecordParseError, ConflictError) as e:
                logger.warning("Skipping %s: %s", path, e)
                if errors is not None:
                    errors.append(e)

    def list_inbox(self, owner: str, errors: list[Exception] | None = None) -> list[Request]:
        return list(self.iter_requests(self.inbox(owner), errors))

    def list_archive(self, errors: list[Exception] | None = None) -> list[Request]:
        return list(self.iter_requests(self.archive_dir, errors))

    def scan(self, owners: list[str] | None = None,
             errors: list[Exception] | None = None) -> list[Request]:
        """All requests in the given inboxes (every inbox when None)."""
        found: list[Request] = []
        for owner in owners if owners is not None else self.inbox_owners():
            found.extend(self.list_inbox(owner, errors))
        return found

    def archived(self, request_id: str) -> Request | None:
        path = self.archive_dir / f"{request_id}.md"
        if not path.is_file():
            return None
        return self.read_request(path)

    def find_request(self, request_id: str) -> Request | None:
        """Locate a request by id: inboxes first, then the archive."""
        for owner in self.inbox_owners():
            path = self.inbox(owner) / f"{request_id}.md"
            if path.is_file():
                return self.read_request(path)
        return self.archived(request_id)

    def in_inbox(self, request_id: str) -> Path | None:
        for owner in self.inbox_owners():
            path = self.inbox(owner) / f"{request_id}.md"
            if path.is_file():
                return path
        return None

    def ensure_unique(self, req: Request) -> None:
        """
        Enforce id uniqueness across inboxes and archive.

        An archived id may come back only as a fresh `pending` record
        (a reopened request).
        """
        existing = self.in_inbox(req.id)
        if existing is not None and existing != req.path:
            raise StateError(f"request id {req.id} already exists at {existing}")
        if (self.archive_dir / req.filename).is_file() and req.status != RequestStatus.PENDING:
            raise StateError(
                f"request id {req.id} is archived; only a pending copy may reopen it"
            )

    def create_request(self, req: Request) -> Path:
        self.ensure_unique(req)
        return self.write_request(req, self.inbox(req.to) / req.filename)

    def is_archived_path(self, path: Path | None) -> bool:
        return path is not None and path.parent.resolve() == self.archive_dir.resolve()

    def archive_request(self, req: Request) -> Path:
        """
        Move a request into the archive. Idempotent.

        A record already in the archive is left untouched; any inbox copy
        of the same id is removed so it can never be re-delivered.
        """
        dest = self.archive_dir / req.filename
        if self.is_archived_path(req.path):
            return dest
        source = req.path or self.inbox(req.to) / req.filename
        self.write_request(req, dest)
        if source.exists() and source.resolve() != dest.resolve():
            source.unlink()
        logger.debug("Archived %s", req.filename)
        return dest

    def delete_request(self, req: Request) -> None:
        if req.path is not None and req.path.exists():
            req.path.unlink()

    # ── Contracts ───────────────────────────────────────────────

    def contract_path(self, owner: str, fmt: ContractFormat = ContractFormat.OPENAPI) -> Path:
        if fmt == ContractFormat.OPENAPI:
            return self.contracts_dir / f"{owner}.yaml"
        return self.internal_dir / f"{owner}.md"

    def read_contract(self, owner: str, fmt: ContractFormat = ContractFormat.OPENAPI) -> Contract:
        path = self.contract_path(owner, fmt)
        return decode_contract(path.read_text(encoding="utf-8"), owner, fmt, path)

    def read_contract_path(self, path: str | Path) -> Contract:
        """Load a contract from a repository path such as `contracts/x.yaml`."""
        path = Path(path)
        if not path.is_absolute():
            path = self.resolve_path(path)
        fmt = ContractFormat.OPENAPI if path.suffix in (".yaml", ".yml") else ContractFormat.INTERNAL
        return decode_contract(path.read_text(encoding="utf-8"), path.stem, fmt, path)

    def resolve_path(self, path: Path) -> Path:
        """Resolve a repository path (optionally `.accord`-prefixed) under root."""
        parts = path.parts
        if parts and parts[0] == ".accord":
            path = Path(*parts[1:])
        return self.root / path

    def write_contract(self, contract: Contract) -> Path:
        path = contract.path or self.contract_path(contract.owner, contract.format)
        atomic_write(path, encode_contract(contract))
        contract.path = path
        return path

    def list_contracts(self) -> list[Path]:
        """Own and mirrored contract files (service then internal)."""
        found: list[Path] = []
        if self.contracts_dir.is_dir():
            found.extend(sorted(self.contracts_dir.glob("*.yaml")))
        if self.internal_dir.is_dir():
            found.extend(sorted(self.internal_dir.glob("*.md")))
            found.extend(sorted(self.internal_dir.glob("*/*.md")))
        return found

    # ── Registry ────────────────────────────────────────────────

    def list_registry(self) -> list[RegistryEntry]:
        entries = []
        if not self.registry_dir.is_dir():
            return entries
        for path in sorted(self.registry_dir.glob("*.md")):
            try:
                entries.append(decode_registry(path.read_text(encoding="utf-8"), path))
            except (RecordParseError, ConflictError) as e:
                logger.warning("Skipping registry entry %s: %s", path, e)
        return entries
