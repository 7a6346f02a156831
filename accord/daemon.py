"""
Accord — Dispatch Daemon

One daemon per service, one request at a time. A tick:

    pull → scan owned inboxes → actionable (pending commands, approved
    requests, pending retries) → critical first, then oldest →
    for each: command fast path, or claim + worker → commit + push

The daemon is an explicit object holding its own state and a
cancellation Event; there is no PID file. run_once() runs one tick on
the caller's thread; start() runs ticks on a supervised background
thread every poll_interval seconds until stop().

Failure handling per record:
  ConflictError            abort that record only, continue the tick
  RecordParseError         a record the worker broke is restored from
                           the claimed copy and counted as a failure
  Refused completion       (contract missing, mirrored, or annotated
                           for another request) counts as a failure
  WorkerTimeout/Failure    attempts + 1; retry (→ pending) below the
                           bound, else failed + archive + one escalation
  SyncError on pull        logged; the tick continues with local state
  SyncError on push        logged; the next tick publishes again
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from accord.commands import execute_command
from accord.config import AccordConfig, DispatcherConfig
from accord.contracts import ContractRegistry
from accord.errors import (
    ConflictError,
    OwnershipError,
    RecordParseError,
    StateError,
    SyncError,
    WorkerFailure,
    WorkerTimeout,
)
from accord.escalation import build_escalation, summarize
from accord.history import HistoryLog
from accord.lifecycle import Event
from accord.logging import DaemonLogger
from accord.operations import RequestOperations
from accord.prompt import build_task_payload
from accord.records import RecordStore
from accord.retry import RetryPolicy
from accord.sync import SyncEngine
from accord.types import (
    CONTRACT_CHANGING_TYPES,
    Request,
    RequestStatus,
    utc_now,
)
from accord.vcs import Vcs
from accord.worker import SubprocessWorker, Worker

logger = logging.getLogger("accord.daemon")


@dataclass
class DaemonState:
    """Counters and liveness for one daemon instance."""
    ticks: int = 0
    processed: int = 0
    failed: int = 0
    retried: int = 0
    escalations: int = 0
    conflicts: int = 0
    last_error: str | None = None
    last_tick_at: str | None = None
    running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TickReport:
    tick: int
    completed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    escalations: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    sync_error: str | None = None


def is_actionable(req: Request) -> bool:
    if req.status == RequestStatus.APPROVED:
        return True
    return req.status == RequestStatus.PENDING and (req.is_command or req.attempts > 0)


class Daemon:
    """Polls owned inboxes and drives records through the state machine."""

    def __init__(
        self,
        store: RecordStore,
        service: str,
        worker: Worker,
        owned: set[str] | None = None,
        sync: SyncEngine | None = None,
        config: DispatcherConfig | None = None,
        project: str = "",
    ):
        self.store = store
        self.service = service
        self.owned = set(owned or ()) | {service}
        self.worker = worker
        self.sync = sync
        self.config = config or DispatcherConfig()
        self.project = project
        self.actor = f"{service}-daemon"

        self.history = HistoryLog(store.history_dir)
        self.contracts = ContractRegistry(store, self.owned, automated=True)
        self.ops = RequestOperations(
            store, self.history, self.contracts,
            actor=self.actor, automated=True,
            max_attempts=self.config.max_attempts,
        )
        self.events = DaemonLogger(service=service)
        self.state = DaemonState()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(
        cls,
        cfg: AccordConfig,
        worker: Worker | None = None,
        vcs: Vcs | None = None,
    ) -> Daemon:
        store = RecordStore(cfg.accord_dir)
        owned = cfg.owned_names()
        service = cfg.service
        dispatcher = cfg.dispatcher
        if worker is None:
            worker = SubprocessWorker(
                dispatcher.agent_cmd,
                timeout=dispatcher.request_timeout,
                logs_dir=store.logs_dir,
                cwd=cfg.project_dir,
            )
        sync = None
        if cfg.repo_model == "multi-repo" or vcs is not None or (cfg.project_dir / ".git").exists():
            sync = SyncEngine(
                cfg.project_dir, service, owned,
                repo_model=cfg.repo_model, hub_url=cfg.hub, vcs=vcs,
                policy=RetryPolicy(max_attempts=dispatcher.push_retries),
            )
        return cls(store, service, worker, owned=owned, sync=sync,
                   config=dispatcher, project=cfg.project)

    # ═══════════════════════════════════════════════════════════════
    # Tick
    # ═══════════════════════════════════════════════════════════════

    def actionable(self) -> list[Request]:
        requests = self.store.scan(sorted(self.owned))
        return sorted((r for r in requests if is_actionable(r)), key=lambda r: r.sort_key())

    def run_once(self) -> TickReport:
        """One tick on the calling thread."""
        self.state.ticks += 1
        report = TickReport(tick=self.state.ticks)
        t0 = time.time()
        self.events.on_tick_start(report.tick)

        if self.sync is not None:
            try:
                self.sync.pull()
                self.events.on_sync("pull", "ok")
            except (SyncError, ConflictError) as e:
                report.sync_error = str(e)
                self.state.last_error = str(e)
                self.events.on_sync("pull", "error", error=str(e)[:500])

        for req in self.actionable():
            if self._stop.is_set():
                break
            try:
                if req.is_command:
                    self._process_command(req, report)
                else:
                    self._process_request(req, report)
            except ConflictError as e:
                report.conflicts.append(req.id)
                self.state.conflicts += 1
                self.events.on_conflict(req.id, e.paths)
            except (StateError, OwnershipError, RecordParseError) as e:
                report.errors.append(f"{req.id}: {e}")
                self.state.last_error = str(e)
                logger.warning("Skipping %s: %s", req.id, e)

        if self.sync is not None:
            try:
                self.sync.push(f"accord-agent({self.service}): tick {report.tick}")
                self.contracts.dirty.clear()
                self.events.on_sync("push", "ok")
            except (SyncError, ConflictError) as e:
                report.sync_error = str(e)
                self.state.last_error = str(e)
                self.events.on_sync("push", "error", error=str(e)[:500])

        self.state.last_tick_at = utc_now()
        self.events.on_tick_end(
            report.tick,
            processed=len(report.completed),
            failed=len(report.failed),
            elapsed_s=time.time() - t0,
        )
        return report

    # ── Command fast path ───────────────────────────────────────

    def _process_command(self, req: Request, report: TickReport) -> None:
        self.events.on_command(req.id, req.command or "")
        self.ops.claim(req)
        result = execute_command(req.command or "", self.store, self.project)
        self.ops.complete(req, result=result)
        self.events.on_transition(req.id, RequestStatus.IN_PROGRESS.value, req.status.value)
        report.completed.append(req.id)
        self.state.processed += 1

    # ── Worker path ─────────────────────────────────────────────

    def _contract_digest(self, req: Request) -> str | None:
        if not req.related_contract:
            return None
        path = Path(req.related_contract)
        if not path.is_absolute():
            path = self.store.resolve_path(path)
        if not path.is_file():
            return None
        return hashlib.sha256(path.read_bytes()).hexdigest()

    def _publish_claim(self, req: Request) -> None:
        if self.sync is None:
            return
        try:
            self.sync.publish(f"accord-agent({self.service}): claim {req.id}")
        except SyncError as e:
            # The claim stays local; the end-of-tick push publishes it
            logger.warning("Could not publish claim on %s: %s", req.id, e)
            self.events.on_sync("push", "error", request_id=req.id, error=str(e)[:500])

    def _process_request(self, req: Request, report: TickReport) -> None:
        self.ops.claim(req)
        self.events.on_claim(req.id, attempt=req.attempts + 1)
        self._publish_claim(req)
        self.ops.verify_claim(req)

        digest = self._contract_digest(req)
        payload = build_task_payload(req, self.store, self.service)
        t0 = time.time()
        try:
            self.worker.run(req, payload)
        except (WorkerTimeout, WorkerFailure) as e:
            self.events.on_worker_result(req.id, "failure", time.time() - t0, str(e))
            self._handle_failure(req, str(e), report)
            return
        self.events.on_worker_result(req.id, "success", time.time() - t0)
        self._handle_success(req, digest, report)

    def _reload(self, req: Request) -> Request | None:
        if req.path is not None and req.path.exists():
            return self.store.read_request(req.path)
        return None

    def _restore(self, req: Request, error: Exception) -> None:
        """Put the claimed in-memory copy back over a record the worker broke."""
        logger.warning("%s left unreadable by the worker; restoring the claimed copy: %s",
                       req.id, error)
        self.store.write_request(req)

    def _handle_success(self, req: Request, digest: str | None, report: TickReport) -> None:
        try:
            current = self._reload(req)
        except RecordParseError as e:
            self._restore(req, e)
            self._handle_failure(req, f"worker left an unreadable record: {e}", report)
            return
        if current is None:
            self._accept_worker_archival(req, report)
            return

        if current.status == RequestStatus.COMPLETED:
            # Worker completed the record without moving it
            if current.related_contract:
                try:
                    self.contracts.finalize(current.related_contract, req)
                except (StateError, OwnershipError) as e:
                    self.store.write_request(req)
                    self._handle_failure(req, f"completion refused: {e}", report)
                    return
            self.store.archive_request(current)
            self.history.record(req.id, RequestStatus.IN_PROGRESS.value,
                                RequestStatus.COMPLETED.value, self.actor,
                                "completed by worker")
            report.completed.append(req.id)
            self.state.processed += 1
            return

        if current.status != RequestStatus.IN_PROGRESS:
            logger.warning("%s left as %s by the worker; not completing",
                           req.id, current.status.value)
            report.errors.append(f"{req.id}: worker left status {current.status.value}")
            return

        if (current.type in CONTRACT_CHANGING_TYPES and current.related_contract
                and self._contract_digest(current) == digest):
            self._handle_failure(
                current,
                f"related contract {current.related_contract} was not updated",
                report,
            )
            return

        try:
            self.ops.complete(current)
        except (StateError, OwnershipError) as e:
            self._handle_failure(current, f"completion refused: {e}", report)
            return
        self.events.on_transition(req.id, RequestStatus.IN_PROGRESS.value,
                                  RequestStatus.COMPLETED.value)
        report.completed.append(req.id)
        self.state.processed += 1

    def _accept_worker_archival(self, req: Request, report: TickReport) -> None:
        try:
            archived = self.store.archived(req.id)
        except RecordParseError as e:
            # The archive never keeps an unreadable entry
            (self.store.archive_dir / req.filename).unlink()
            self._restore(req, e)
            self._handle_failure(req, f"worker archived an unreadable record: {e}", report)
            return
        if archived is None:
            logger.warning("%s disappeared during processing and is not archived", req.id)
            report.errors.append(f"{req.id}: record vanished")
            return
        detail = "archived by worker"
        if archived.related_contract:
            try:
                self.contracts.finalize(archived.related_contract, req)
            except (StateError, OwnershipError) as e:
                logger.warning("Cannot finalize contract for %s: %s", req.id, e)
                report.errors.append(f"{req.id}: contract not finalized: {e}")
                detail = f"archived by worker; contract not finalized: {e}"
        self.history.record(req.id, RequestStatus.IN_PROGRESS.value,
                            archived.status.value, self.actor, detail)
        if archived.status == RequestStatus.COMPLETED:
            report.completed.append(req.id)
            self.state.processed += 1
        logger.info("%s archived by the worker (%s)", req.id, archived.status.value)

    def _handle_failure(self, req: Request, reason: str, report: TickReport) -> None:
        try:
            current = self._reload(req) or req
        except RecordParseError as e:
            self._restore(req, e)
            current = req
        if current.status != RequestStatus.IN_PROGRESS:
            logger.warning("%s is %s after a failed run; leaving it for review",
                           req.id, current.status.value)
            report.errors.append(f"{req.id}: {reason}")
            return

        max_attempts = self.config.max_attempts
        event = self.ops.record_failure(current, f"{reason} (attempt {current.attempts + 1}/{max_attempts})")
        self.events.on_transition(req.id, RequestStatus.IN_PROGRESS.value, current.status.value)
        if event == Event.RETRY:
            report.retried.append(req.id)
            self.state.retried += 1
            return

        report.failed.append(req.id)
        self.state.failed += 1
        self._escalate(current, f"{reason}; max attempts ({max_attempts}) exhausted", report)

    def _escalate(self, failed: Request, reason: str, report: TickReport) -> None:
        orchestrator = self.config.orchestrator
        for existing in self.store.list_inbox(orchestrator) + self.store.list_archive():
            if existing.originated_from == failed.id:
                logger.info("Escalation for %s already exists: %s", failed.id, existing.id)
                return
        escalation = build_escalation(failed, reason, self.service, orchestrator)
        self.store.create_request(escalation)
        self.history.record(escalation.id, "new", escalation.status.value, self.actor,
                            reason, to=orchestrator)
        report.escalations.append(escalation.id)
        self.state.escalations += 1
        self.events.on_escalation(failed.id, escalation.id, reason)

    # ═══════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════

    def _loop(self) -> None:
        self.state.running = True
        try:
            while not self._stop.is_set():
                try:
                    self.run_once()
                except Exception as e:
                    # Supervisor: a broken tick never kills the daemon
                    self.state.last_error = str(e)
                    logger.exception("Tick %d failed", self.state.ticks)
                self._stop.wait(self.config.poll_interval)
        finally:
            self.state.running = False

    def start(self) -> threading.Thread:
        """Run ticks on a background thread until stop()."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"accord-daemon-{self.service}", daemon=True,
        )
        self._thread.start()
        logger.info("Daemon started for %s (interval %ss)", self.service, self.config.poll_interval)
        return self._thread

    def run_forever(self) -> None:
        """Foreground loop; returns after stop() is called from elsewhere."""
        self._stop.clear()
        self._loop()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Daemon stopped for %s", self.service)

    @property
    def is_running(self) -> bool:
        return self.state.running

    def status(self) -> dict[str, Any]:
        requests = self.store.scan(sorted(self.owned))
        counts: dict[str, int] = {}
        for req in requests:
            counts[req.status.value] = counts.get(req.status.value, 0) + 1
        return {
            "service": self.service,
            "owned": sorted(self.owned),
            "state": self.state.to_dict(),
            "inbox": counts,
            "actionable": [r.id for r in self.actionable()],
            "unpublished_contracts": sorted(self.contracts.dirty),
            "escalations": [summarize(r) for r in self.store.list_inbox(self.config.orchestrator)
                            if r.originated_from],
        }
