"""
Accord — Hub-and-Spoke Sync

Reconciles the local replica (`<repo>/.accord`) with the hub clone
(`<repo>/.accord/hub`). The direction is fixed per artifact:

  - local owner's artifacts (own contract, own internal contracts, own
    registry entries, outgoing requests, archive) are copied OUT to the hub
  - other owners' artifacts (their contracts, internal contracts, registry
    entries) and requests addressed to us are copied IN

No file is ever merged two ways. A conflict on the same record during a
rebase is surfaced as ConflictError with the paths verbatim.

Hub layout:
    contracts/{owner}.yaml
    contracts/internal/{owner}/{module}.md
    comms/inbox/{owner}/req-*.md
    comms/archive/req-*.md
    comms/history/*.jsonl
    registry/{name}.md

In monorepo mode there is no hub: pull and push operate on the repository
itself (rebase from and publish to its remote) with the same retry policy.
"""

from __future__ import annotations

import enum
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from accord.errors import ConflictError, RecordParseError, SyncError
from accord.history import HistoryLog
from accord.records import REQUEST_GLOB, RecordStore
from accord.retry import RetryPolicy, retry_operation
from accord.types import RequestStatus, parse_timestamp
from accord.vcs import GitVcs, PushRejected, Vcs

logger = logging.getLogger("accord.sync")


class RepoModel(str, enum.Enum):
    MONOREPO = "monorepo"
    MULTI_REPO = "multi-repo"


@dataclass
class PullReport:
    delivered: list[str] = field(default_factory=list)
    reopened: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    mirrored: int = 0


@dataclass
class PushReport:
    copied: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    committed: bool = False
    attempts: int = 0


def _copy(src: Path, dest: Path) -> bool:
    """Copy when the content differs. True if dest changed."""
    if dest.is_file() and dest.read_bytes() == src.read_bytes():
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dest)
    return True


class SyncEngine:
    """
    Pull/push between the local replica and the hub.

    `owned` is every name this replica is authoritative for: the service
    plus its modules. `service` names the hub namespace for internal
    contracts.
    """

    def __init__(
        self,
        project_dir: str | Path,
        service: str,
        owned: Iterable[str] | None = None,
        repo_model: RepoModel | str = RepoModel.MULTI_REPO,
        hub_url: str | None = None,
        vcs: Vcs | None = None,
        policy: RetryPolicy | None = None,
        sleep_fn=None,
    ):
        self.project_dir = Path(project_dir)
        self.service = service
        self.owned = set(owned or ()) | {service}
        self.repo_model = RepoModel(repo_model)
        self.hub_url = hub_url
        self.policy = policy or RetryPolicy()
        self._sleep_fn = sleep_fn

        self.local = RecordStore(self.project_dir / ".accord")
        self.hub_dir = self.local.root / "hub"
        self.hub = RecordStore(self.hub_dir)
        self.history = HistoryLog(self.local.history_dir)

        if vcs is None:
            workdir = self.project_dir if self.repo_model == RepoModel.MONOREPO else self.hub_dir
            vcs = GitVcs(workdir)
        self.vcs = vcs

    @property
    def is_monorepo(self) -> bool:
        return self.repo_model == RepoModel.MONOREPO

    def _retry_kwargs(self) -> dict:
        kwargs = {"policy": self.policy}
        if self._sleep_fn is not None:
            kwargs["sleep_fn"] = self._sleep_fn
        return kwargs

    def _require_hub(self) -> None:
        if not self.hub_dir.is_dir():
            raise SyncError(f"hub not found at {self.hub_dir}; run 'accord sync init' first")

    def _fetch(self) -> None:
        retry_operation(
            self.vcs.pull,
            is_retryable=lambda e: isinstance(e, SyncError) and not isinstance(e, ConflictError),
            name="pull",
            **self._retry_kwargs(),
        )

    # ═══════════════════════════════════════════════════════════════
    # init
    # ═══════════════════════════════════════════════════════════════

    def init(self, services: Iterable[str] = ()) -> None:
        """Clone the hub, creating its structure when it is empty."""
        if self.is_monorepo:
            for name in sorted(set(services) | self.owned):
                self.local.inbox(name).mkdir(parents=True, exist_ok=True)
            self.local.archive_dir.mkdir(parents=True, exist_ok=True)
            return

        if (self.hub_dir / ".git").exists():
            logger.info("Hub already cloned at %s; pulling", self.hub_dir)
            self._fetch()
            return
        if not self.hub_url:
            raise SyncError("no 'hub' URL configured")

        logger.info("Cloning hub %s → %s", self.hub_url, self.hub_dir)
        self.vcs = GitVcs.clone(self.hub_url, self.hub_dir)
        if not self.hub.contracts_dir.is_dir():
            logger.info("Hub is empty; creating structure")
            self.hub.internal_dir.mkdir(parents=True, exist_ok=True)
            self.hub.archive_dir.mkdir(parents=True, exist_ok=True)
            for name in sorted(set(services) | {self.service}):
                inbox = self.hub.inbox(name)
                inbox.mkdir(parents=True, exist_ok=True)
                (inbox / ".gitkeep").touch()
            (self.hub.internal_dir / ".gitkeep").touch()
            (self.hub.archive_dir / ".gitkeep").touch()
            self.vcs.commit("accord: init hub structure")
            self._publish()

    # ═══════════════════════════════════════════════════════════════
    # pull
    # ═══════════════════════════════════════════════════════════════

    def pull(self) -> PullReport:
        report = PullReport()
        if self.is_monorepo:
            self._fetch()
            return report

        self._require_hub()
        self._fetch()
        for owner in sorted(self.owned):
            self._pull_inbox(owner, report)
        self._drop_withdrawn(report)
        self._refresh_outgoing(report)
        report.mirrored += self._mirror_in()
        if report.delivered or report.reopened:
            logger.info("Pulled %d new request(s) from hub",
                        len(report.delivered) + len(report.reopened))
        return report

    def _pull_inbox(self, owner: str, report: PullReport) -> None:
        local_inbox = self.local.inbox(owner)
        for hub_path in sorted(self.hub.inbox(owner).glob(REQUEST_GLOB)):
            local_path = local_inbox / hub_path.name
            if local_path.exists():
                continue
            if (self.local.archive_dir / hub_path.name).is_file():
                try:
                    incoming = self.hub.read_request(hub_path)
                    archived = self.local.archived(incoming.id)
                except (RecordParseError, ConflictError) as e:
                    logger.warning("Skipping hub record %s: %s", hub_path, e)
                    continue
                if not self._is_reopened(incoming, archived, owner):
                    report.discarded.append(incoming.id)
                    logger.debug("Discarded already-archived %s (%s)",
                                 incoming.id, incoming.status.value)
                    continue
                report.reopened.append(incoming.id)
                logger.info("Reopened request: %s", hub_path.name)
            else:
                report.delivered.append(hub_path.stem)
                logger.info("New request: %s", hub_path.name)
            _copy(hub_path, local_path)

    def _drop_withdrawn(self, report: PullReport) -> None:
        """Pending requests from other owners that vanished from the hub."""
        created_here = {e.request_id for e in self.history.entries() if e.from_status == "new"}
        for owner in sorted(self.owned):
            for req in self.local.list_inbox(owner):
                if req.from_ in self.owned or req.status != RequestStatus.PENDING:
                    continue
                if req.id in created_here:
                    continue
                if (self.hub.inbox(owner) / req.filename).exists():
                    continue
                if (self.hub.archive_dir / req.filename).exists():
                    continue
                self.local.delete_request(req)
                report.dropped.append(req.id)
                logger.info("Dropped %s: withdrawn by %s", req.id, req.from_)

    def _refresh_outgoing(self, report: PullReport) -> None:
        """Track delivered outgoing requests as their owners move them."""
        for owner in self.local.inbox_owners():
            if owner in self.owned:
                continue
            for src in sorted(self.local.inbox(owner).glob(REQUEST_GLOB)):
                hub_copy = self.hub.inbox(owner) / src.name
                hub_archived = self.hub.archive_dir / src.name
                if hub_copy.is_file():
                    report.mirrored += _copy(hub_copy, src)
                elif hub_archived.is_file():
                    _copy(hub_archived, self.local.archive_dir / src.name)
                    src.unlink()
                    report.mirrored += 1

    def _mirror_in(self) -> int:
        """Other owners' contracts and registry entries, never our own."""
        count = 0
        if self.hub.contracts_dir.is_dir():
            for src in sorted(self.hub.contracts_dir.glob("*.yaml")):
                if src.stem in self.owned:
                    continue
                count += _copy(src, self.local.contracts_dir / src.name)
        if self.hub.internal_dir.is_dir():
            for owner_dir in sorted(p for p in self.hub.internal_dir.iterdir() if p.is_dir()):
                if owner_dir.name in self.owned:
                    continue
                for src in sorted(owner_dir.glob("*.md")):
                    count += _copy(src, self.local.internal_dir / owner_dir.name / src.name)
        if self.hub.registry_dir.is_dir():
            for src in sorted(self.hub.registry_dir.glob("*.md")):
                if src.stem in self.owned:
                    continue
                count += _copy(src, self.local.registry_dir / src.name)
        return count

    # ═══════════════════════════════════════════════════════════════
    # push
    # ═══════════════════════════════════════════════════════════════

    def push(self, message: str | None = None) -> PushReport:
        message = message or f"accord-sync({self.service}): push"
        report = PushReport()
        if self.is_monorepo:
            self._fetch()
            report.committed = self.vcs.commit(message)
            report.attempts = self._publish()
            return report

        self._require_hub()
        self._fetch()
        self._push_contracts(report)
        self._push_registry(report)
        self._push_requests(report)
        self._push_withdrawals(report)
        self._push_archive(report)
        self._push_history(report)
        report.committed = self.vcs.commit(message)
        if report.committed:
            report.attempts = self._publish()
            logger.info("Pushed %d change(s) to hub", len(report.copied) + len(report.removed))
        else:
            logger.debug("No changes to push")
        return report

    def _publish(self) -> int:
        result = retry_operation(
            self.vcs.push,
            is_retryable=lambda e: isinstance(e, PushRejected),
            recover=lambda e: self.vcs.rebase(),
            name="push",
            **self._retry_kwargs(),
        )
        return result.attempts

    def _push_contracts(self, report: PushReport) -> None:
        for owner in sorted(self.owned):
            src = self.local.contracts_dir / f"{owner}.yaml"
            if src.is_file() and _copy(src, self.hub.contracts_dir / src.name):
                report.copied.append(f"contracts/{src.name}")
        if self.local.internal_dir.is_dir():
            for src in sorted(self.local.internal_dir.glob("*.md")):
                dest = self.hub.internal_dir / self.service / src.name
                if _copy(src, dest):
                    report.copied.append(f"contracts/internal/{self.service}/{src.name}")

    def _push_registry(self, report: PushReport) -> None:
        for owner in sorted(self.owned):
            src = self.local.registry_dir / f"{owner}.md"
            if src.is_file() and _copy(src, self.hub.registry_dir / src.name):
                report.copied.append(f"registry/{src.name}")

    def _push_requests(self, report: PushReport) -> None:
        for owner in self.local.inbox_owners():
            local_inbox = self.local.inbox(owner)
            hub_inbox = self.hub.inbox(owner)
            for src in sorted(local_inbox.glob(REQUEST_GLOB)):
                dest = hub_inbox / src.name
                if owner in self.owned:
                    # Incoming: mirror status only for copies the hub knows
                    if not dest.exists():
                        continue
                elif dest.exists() or (self.hub.archive_dir / src.name).exists():
                    # Outgoing: once delivered, the target owner's copy wins
                    continue
                if _copy(src, dest):
                    report.copied.append(f"comms/inbox/{owner}/{src.name}")

    def _push_withdrawals(self, report: PushReport) -> None:
        entries = [e for actor in sorted(self.owned) for e in self.history.withdrawn(actor)]
        for entry in entries:
            to = entry.extra.get("to")
            owners = [to] if to else self.hub.inbox_owners()
            for owner in owners:
                path = self.hub.inbox(owner) / f"{entry.request_id}.md"
                if not path.exists():
                    continue
                try:
                    status = self.hub.read_request(path).status
                except (RecordParseError, ConflictError) as e:
                    logger.warning("Cannot withdraw %s: %s", path, e)
                    continue
                if status == RequestStatus.PENDING:
                    path.unlink()
                    report.removed.append(f"comms/inbox/{owner}/{path.name}")

    def _push_archive(self, report: PushReport) -> None:
        if not self.local.archive_dir.is_dir():
            return
        for archived in self.local.list_archive():
            src = archived.path
            if _copy(src, self.hub.archive_dir / src.name):
                report.copied.append(f"comms/archive/{src.name}")
            for owner in self.hub.inbox_owners():
                stale = self.hub.inbox(owner) / src.name
                if not stale.exists():
                    continue
                try:
                    hub_copy = self.hub.read_request(stale)
                except (RecordParseError, ConflictError) as e:
                    logger.warning("Leaving %s in place: %s", stale, e)
                    continue
                if self._is_reopened(hub_copy, archived, owner):
                    continue
                stale.unlink()
                report.removed.append(f"comms/inbox/{owner}/{src.name}")

    def _is_reopened(self, hub_copy, archived, owner: str) -> bool:
        """A pending copy created after the archived one was resolved."""
        if hub_copy.status != RequestStatus.PENDING:
            return False
        if (self.local.inbox(owner) / hub_copy.filename).exists():
            return True
        if archived is None:
            return True
        return parse_timestamp(hub_copy.created) > parse_timestamp(archived.updated)

    def _push_history(self, report: PushReport) -> None:
        if not self.local.history_dir.is_dir():
            return
        for src in sorted(self.local.history_dir.glob("*.jsonl")):
            if _copy(src, self.hub.history_dir / src.name):
                report.copied.append(f"comms/history/{src.name}")

    # ═══════════════════════════════════════════════════════════════
    # Claim publication
    # ═══════════════════════════════════════════════════════════════

    def publish(self, message: str) -> PushReport:
        """Make a local change (e.g. a claim) visible to other daemons."""
        return self.push(message)
