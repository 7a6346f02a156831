"""
Accord — Dependency & Cascade Notifier

Derives secondary requests from primary changes:

  check_dependencies()  A depends on contract C of B; C changed since a
                        reference commit → a `req-contract-change-{B}-{epoch}`
                        notification in A's inbox (skipped when unchanged or
                        already pending for the same contract)

  create_cascade()      one parent → one child per target owner, each
                        child back-referencing the parent; the parent's
                        `child_requests` grows by new ids only

Both are idempotent: running them twice creates nothing new.

dependencies.yaml:
    owner: web                 # or `team:`
    depends_on:
      - owner: payments        # or `team:`
        contract: contracts/payments.yaml
        used_by: [checkout]
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from accord.errors import ConfigError, StateError
from accord.history import HistoryLog
from accord.records import RecordStore
from accord.types import Priority, Request, RequestStatus, RequestType, Scope
from accord.vcs import Vcs

logger = logging.getLogger("accord.cascade")

NOTIFICATION_PREFIX = "req-contract-change-"
CREATED = "new"


@dataclass
class DependencyEdge:
    """`owner` depends on `contract`, which `depends_on` owns."""
    owner: str
    depends_on: str
    contract: str
    used_by: list[str] = field(default_factory=list)


def load_dependencies(path: str | Path) -> list[DependencyEdge]:
    path = Path(path)
    if not path.is_file():
        logger.info("No dependencies file at %s; nothing to check", path)
        return []
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    owner = data.get("owner") or data.get("team")
    if not owner:
        raise ConfigError(f"cannot determine owner from {path} (expected 'owner:' or 'team:')")

    edges = []
    for item in data.get("depends_on") or []:
        dep = item.get("owner") or item.get("team")
        contract = item.get("contract")
        if not dep or not contract:
            logger.warning("Skipping incomplete dependency entry in %s: %s", path, item)
            continue
        used_by = item.get("used_by") or []
        edges.append(DependencyEdge(
            owner=str(owner),
            depends_on=str(dep),
            contract=str(contract),
            used_by=[str(u) for u in used_by],
        ))
    return edges


def _record_creation(history: HistoryLog | None, req: Request, actor: str) -> None:
    if history is not None:
        history.record(req.id, CREATED, req.status.value, actor, to=req.to)


# ═══════════════════════════════════════════════════════════════════
# Contract change notifications
# ═══════════════════════════════════════════════════════════════════

def _contract_file(store: RecordStore, contract: str) -> Path:
    path = Path(contract)
    if path.suffix not in (".yaml", ".yml", ".md"):
        return store.contracts_dir / f"{contract}.yaml"
    if len(path.parts) == 1:
        return store.contracts_dir / path
    return store.resolve_path(path) if not path.is_absolute() else path


def _notification_pending(store: RecordStore, owner: str, contract: str) -> bool:
    for req in store.list_inbox(owner):
        if (req.id.startswith(NOTIFICATION_PREFIX)
                and req.related_contract == contract
                and req.status == RequestStatus.PENDING):
            return True
    return False


def check_dependencies(
    store: RecordStore,
    edges: list[DependencyEdge],
    vcs: Vcs,
    since: str = "HEAD~1",
    vcs_root: str | Path | None = None,
    history: HistoryLog | None = None,
    now: float | None = None,
) -> list[Request]:
    """Synthesize one notification per changed dependency. Returns new requests."""
    created: list[Request] = []
    vcs_root = Path(vcs_root) if vcs_root is not None else store.root
    ts = time.time() if now is None else now

    for edge in edges:
        path = _contract_file(store, edge.contract)
        if not path.is_file():
            logger.info("Contract not found: %s (skipping)", path)
            continue
        rel = os.path.relpath(path.resolve(), vcs_root.resolve())
        if not vcs.changed_since(rel, since):
            logger.debug("Unchanged since %s: %s", since, rel)
            continue
        contract_ref = str(path.relative_to(store.root)) if path.is_relative_to(store.root) else rel
        if _notification_pending(store, edge.owner, contract_ref):
            logger.info("Notification for %s already pending in %s", contract_ref, edge.owner)
            continue

        logger.info("Contract changed: %s", contract_ref)
        used_by = ""
        if edge.used_by:
            used_by = f"\n\nServices that depend on this contract: {', '.join(edge.used_by)}"
        req = Request.create(
            f"{NOTIFICATION_PREFIX}{edge.depends_on}-{int(ts)}",
            from_=edge.depends_on,
            to=edge.owner,
            type=RequestType.OTHER,
            priority=Priority.MEDIUM,
            scope=Scope.EXTERNAL,
            now=ts,
            related_contract=contract_ref,
            body=(
                f"## What\n\nThe contract **{edge.contract}** owned by **{edge.depends_on}** "
                f"has been modified.{used_by}\n\n"
                f"## Proposed Change\n\nReview the updated contract and assess the impact "
                f"on your services.\n\n"
                f"## Why\n\nContract change notification (generated from dependencies).\n\n"
                f"## Impact\n\nReview the changes in `{contract_ref}` and update consuming "
                f"code if needed."
            ),
        )
        store.create_request(req)
        _record_creation(history, req, edge.owner)
        created.append(req)
        logger.info("Created notification: %s", req.id)

    if not created:
        logger.info("No contract changes detected in dependencies")
    return created


# ═══════════════════════════════════════════════════════════════════
# Cascades
# ═══════════════════════════════════════════════════════════════════

def cascade_child_id(parent_id: str, target: str) -> str:
    slug = parent_id[4:] if parent_id.startswith("req-") else parent_id
    return f"req-cascade-{slug}-{target}"


def _ancestors(store: RecordStore, req: Request) -> set[str]:
    seen: set[str] = set()
    current = req
    while current.parent_request and current.parent_request not in seen:
        seen.add(current.parent_request)
        parent = store.find_request(current.parent_request)
        if parent is None:
            break
        current = parent
    return seen


def create_cascade(
    store: RecordStore,
    parent_id: str,
    targets: list[str],
    from_: str = "orchestrator",
    body: str = "",
    type: RequestType = RequestType.OTHER,
    priority: Priority = Priority.MEDIUM,
    history: HistoryLog | None = None,
    now: float | None = None,
) -> list[Request]:
    """
    Fan `parent_id` out to `targets`. Returns the children created by this
    call; children that already exist are linked but not rewritten.
    """
    if type == RequestType.COMMAND:
        raise StateError("command requests cannot be cascaded")
    parent = store.find_request(parent_id)
    if parent is None:
        raise StateError(f"parent request {parent_id} not found in any inbox or the archive")

    ancestors = _ancestors(store, parent) | {parent.id}
    created: list[Request] = []
    linked: list[str] = []

    for target in dict.fromkeys(t.strip() for t in targets if t.strip()):
        child_id = cascade_child_id(parent.id, target)
        if child_id in ancestors:
            raise StateError(f"{child_id} is an ancestor of {parent.id}; cascades form a tree")
        linked.append(child_id)
        if store.find_request(child_id) is not None:
            logger.debug("Child %s already exists", child_id)
            continue

        what = body.strip() or f"Cascaded from parent request: {parent.id}"
        child = Request.create(
            child_id,
            from_=from_,
            to=target,
            type=type,
            priority=priority,
            scope=Scope.EXTERNAL,
            now=now,
            parent_request=parent.id,
            body=(
                f"## What\n\n{what}\n\n"
                f"## Proposed Change\n\nImplement the changes described above for the "
                f"**{target}** service.\n\n"
                f"## Why\n\nPart of cascaded request **{parent.id}**.\n\n"
                f"## Impact\n\nCheck the parent request for full context."
            ),
        )
        store.create_request(child)
        _record_creation(history, child, from_)
        created.append(child)
        logger.info("Created child request: %s → %s", child_id, target)

    children = list(dict.fromkeys(parent.child_requests + linked))
    if children != parent.child_requests:
        added = len(children) - len(set(parent.child_requests))
        parent.child_requests = children
        store.write_request(parent)
        logger.info("Updated parent %s child_requests (+%d)", parent.id, added)
    return created
