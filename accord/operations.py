"""
Accord — Request Operations

Persisted transitions: each operation validates through the state
machine, writes the record (or archives / deletes it), and appends one
history line. A transition that fails validation leaves the file on disk
untouched.

Usage:
    ops = RequestOperations(store, history, contracts, actor="alice")
    ops.approve("req-001-add-users")
    ops.reject("req-002-drop-table", reason="Breaks billing")
"""

from __future__ import annotations

import logging

from accord.contracts import ContractRegistry
from accord.errors import ConflictError, StateError
from accord.history import HistoryLog
from accord.lifecycle import (
    WITHDRAWN,
    Event,
    TransitionContext,
    apply,
    failure_event,
    next_status,
)
from accord.records import RecordStore
from accord.types import Request, RequestStatus

logger = logging.getLogger("accord.operations")


class RequestOperations:
    """State transitions for one actor over one record store."""

    def __init__(
        self,
        store: RecordStore,
        history: HistoryLog,
        contracts: ContractRegistry | None = None,
        actor: str = "",
        automated: bool = False,
        max_attempts: int = 3,
    ):
        self.store = store
        self.history = history
        self.contracts = contracts
        self.actor = actor
        self.automated = automated
        self.max_attempts = max_attempts

    def _ctx(self, **kwargs) -> TransitionContext:
        return TransitionContext(
            actor=self.actor,
            automated=self.automated,
            max_attempts=self.max_attempts,
            **kwargs,
        )

    def load(self, request_id: str) -> Request:
        req = self.store.find_request(request_id)
        if req is None:
            raise StateError(f"request {request_id} not found")
        return req

    def _resolve(self, ref: str | Request) -> Request:
        return self.load(ref) if isinstance(ref, str) else ref

    def _persist(self, req: Request, event: Event, ctx: TransitionContext,
                 now: float | None = None, detail: str = "") -> Request:
        from_status = req.status.value
        target = apply(req, event, ctx, now)
        if target is None:
            self.store.delete_request(req)
            self.history.record(req.id, from_status, WITHDRAWN, self.actor, detail,
                                to=req.to)
            logger.info("%s withdrawn by %s", req.id, self.actor)
            return req
        if req.is_terminal:
            self.store.archive_request(req)
        else:
            self.store.write_request(req)
        self.history.record(req.id, from_status, target.value, self.actor, detail,
                            event=event.value)
        logger.info("%s: %s → %s (%s)", req.id, from_status, target.value, event.value)
        return req

    # ── Human decisions ─────────────────────────────────────────

    def approve(self, ref: str | Request, now: float | None = None) -> Request:
        return self._persist(self._resolve(ref), Event.APPROVE, self._ctx(), now)

    def reject(self, ref: str | Request, reason: str = "",
               now: float | None = None) -> Request:
        return self._persist(self._resolve(ref), Event.REJECT, self._ctx(reason=reason),
                             now, detail=reason)

    def withdraw(self, ref: str | Request) -> Request:
        return self._persist(self._resolve(ref), Event.WITHDRAW, self._ctx())

    def requeue(self, ref: str | Request, reason: str = "",
                now: float | None = None) -> Request:
        """in-progress → pending after the requirements changed."""
        req = self._resolve(ref)
        next_status(req, Event.REQUEUE, self._ctx(reason=reason))
        if reason:
            req.append_section("Requeued", reason)
        return self._persist(req, Event.REQUEUE, self._ctx(reason=reason), now,
                             detail=reason)

    # ── Processing ──────────────────────────────────────────────

    def claim(self, req: Request, now: float | None = None) -> Request:
        """
        Write-then-verify claim.

        The on-disk record must still match what the caller scanned; after
        writing, the record is re-read and must carry this actor's claim.
        """
        if req.path is None or not req.path.exists():
            raise ConflictError(f"{req.id} disappeared before it could be claimed",
                                [str(req.path or req.filename)])
        current = self.store.read_request(req.path)
        if (current.status, current.updated) != (req.status, req.updated):
            raise ConflictError(f"{req.id} changed since it was scanned", [str(req.path)])
        self._persist(req, Event.CLAIM, self._ctx(), now)
        self.verify_claim(req)
        return req

    def verify_claim(self, req: Request) -> None:
        if req.path is None or not req.path.exists():
            raise ConflictError(f"claim on {req.id} was lost", [str(req.path or req.filename)])
        current = self.store.read_request(req.path)
        if current.status != RequestStatus.IN_PROGRESS or current.claimed_by != (self.actor or None):
            raise ConflictError(
                f"claim on {req.id} was lost (held by {current.claimed_by}, "
                f"status {current.status.value})",
                [str(req.path)],
            )

    def complete(self, req: Request, result: str | None = None,
                 now: float | None = None) -> Request:
        """
        in-progress → completed with the related contract finalized first.

        The guard is checked before the contract is touched, so a refused
        completion leaves both the record and the contract unchanged.
        """
        next_status(req, Event.COMPLETE, self._ctx(contract_finalized=True))
        if req.related_contract:
            if self.contracts is None:
                raise StateError(f"{req.id}: no contract registry to finalize "
                                 f"{req.related_contract}")
            self.contracts.finalize(req.related_contract, req)
        if result is not None:
            req.append_section("Result", result)
        return self._persist(req, Event.COMPLETE, self._ctx(contract_finalized=True), now)

    def record_failure(self, req: Request, reason: str,
                       now: float | None = None) -> Event:
        """
        Count one failed worker invocation: RETRY (back to pending) while
        attempts remain, FAIL (archived) once the bound is reached.
        """
        event = failure_event(req, self.max_attempts)
        next_status(req, event, self._ctx(reason=reason))
        title = "Failure" if event == Event.FAIL else f"Attempt {req.attempts + 1} Failed"
        req.append_section(title, reason)
        self._persist(req, event, self._ctx(reason=reason), now, detail=reason)
        return event
