"""
Accord — Request State Machine

Pure logic, no I/O: given a request's current status and an event,
compute the next status or reject the transition with StateError.
operations.py wires these transitions to the record store, the contract
registry, and the history log.

    pending ──approve──▶ approved ──claim──▶ in-progress ──complete──▶ completed
       │                                       │  ▲   │
       ├──reject──▶ rejected                   │  │   └──fail──▶ failed
       ├──withdraw──▶ (deleted)       requeue/retry
       └──claim (command or retry)──────────────┘

Guards:
  approve   never by an unattended process
  reject    non-empty rejection reason
  claim     from pending only for `command` requests or retries (attempts > 0)
  complete  related contract finalized in the same operation
  retry     attempts + 1 below the bound
  fail      attempts + 1 at or above the bound
  requeue   requirements changed; resets attempts to 0 so approval is needed again

A transition that fails validation leaves the request untouched.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable

from accord.errors import OwnershipError, StateError
from accord.types import Request, RequestStatus, utc_now


class Event(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    CLAIM = "claim"
    COMPLETE = "complete"
    REQUEUE = "requeue"
    RETRY = "retry"
    FAIL = "fail"


# Pseudo-status recorded in history for a withdrawn (deleted) request
WITHDRAWN = "withdrawn"

# (from_status, event) → to_status; None means the record is deleted
_TRANSITIONS: dict[tuple[RequestStatus, Event], RequestStatus | None] = {
    (RequestStatus.PENDING, Event.APPROVE): RequestStatus.APPROVED,
    (RequestStatus.PENDING, Event.REJECT): RequestStatus.REJECTED,
    (RequestStatus.PENDING, Event.WITHDRAW): None,
    (RequestStatus.PENDING, Event.CLAIM): RequestStatus.IN_PROGRESS,
    (RequestStatus.APPROVED, Event.CLAIM): RequestStatus.IN_PROGRESS,
    (RequestStatus.IN_PROGRESS, Event.COMPLETE): RequestStatus.COMPLETED,
    (RequestStatus.IN_PROGRESS, Event.REQUEUE): RequestStatus.PENDING,
    (RequestStatus.IN_PROGRESS, Event.RETRY): RequestStatus.PENDING,
    (RequestStatus.IN_PROGRESS, Event.FAIL): RequestStatus.FAILED,
}


@dataclass
class TransitionContext:
    """Who is acting and what the caller has already established."""
    actor: str = ""
    automated: bool = False          # True for the daemon
    reason: str = ""                 # rejection / requeue / failure reason
    contract_finalized: bool = False
    max_attempts: int = 3


def valid_events(status: RequestStatus) -> list[Event]:
    return [event for (src, event) in _TRANSITIONS if src == status]


# ═══════════════════════════════════════════════════════════════════
# Guards
# ═══════════════════════════════════════════════════════════════════

def _guard_target_owner(req: Request, ctx: TransitionContext) -> None:
    if ctx.actor and not ctx.automated and ctx.actor != req.to:
        raise OwnershipError(
            f"{req.id}: only the target owner '{req.to}' may change this request "
            f"(actor: {ctx.actor})"
        )


def _guard_approve(req: Request, ctx: TransitionContext) -> None:
    if ctx.automated:
        raise StateError(
            f"{req.id}: pending → approved requires a decision by the target owner; "
            f"an unattended process may not approve"
        )
    _guard_target_owner(req, ctx)


def _guard_reject(req: Request, ctx: TransitionContext) -> None:
    _guard_target_owner(req, ctx)
    if not (ctx.reason.strip() or (req.section("Rejection Reason") or "").strip()):
        raise StateError(f"{req.id}: rejection requires a non-empty reason")


def _guard_withdraw(req: Request, ctx: TransitionContext) -> None:
    if ctx.actor and ctx.actor != req.from_:
        raise OwnershipError(
            f"{req.id}: only the requester '{req.from_}' may withdraw (actor: {ctx.actor})"
        )


def _guard_claim(req: Request, ctx: TransitionContext) -> None:
    _guard_target_owner(req, ctx)
    if req.status == RequestStatus.PENDING and not (req.is_command or req.attempts > 0):
        raise StateError(
            f"{req.id}: pending requests must be approved before they can be claimed"
        )


def _guard_complete(req: Request, ctx: TransitionContext) -> None:
    _guard_target_owner(req, ctx)
    if req.related_contract and not ctx.contract_finalized:
        raise StateError(
            f"{req.id}: related contract {req.related_contract} must be updated "
            f"and finalized before completion"
        )


def _guard_retry(req: Request, ctx: TransitionContext) -> None:
    if req.attempts + 1 >= ctx.max_attempts:
        raise StateError(
            f"{req.id}: attempt {req.attempts + 1}/{ctx.max_attempts} exhausts the "
            f"retry budget; use fail"
        )


def _guard_fail(req: Request, ctx: TransitionContext) -> None:
    if req.attempts + 1 < ctx.max_attempts:
        raise StateError(
            f"{req.id}: attempt {req.attempts + 1}/{ctx.max_attempts} is below the "
            f"retry budget; use retry"
        )


_GUARDS: dict[Event, Callable[[Request, TransitionContext], None]] = {
    Event.APPROVE: _guard_approve,
    Event.REJECT: _guard_reject,
    Event.WITHDRAW: _guard_withdraw,
    Event.CLAIM: _guard_claim,
    Event.COMPLETE: _guard_complete,
    Event.REQUEUE: _guard_target_owner,
    Event.RETRY: _guard_retry,
    Event.FAIL: _guard_fail,
}


# ═══════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════

def next_status(req: Request, event: Event,
                ctx: TransitionContext | None = None) -> RequestStatus | None:
    """
    Validate `event` against the request's current status.

    Returns the target status (None for withdrawal). Raises StateError
    (or OwnershipError for the wrong actor) without touching `req`.
    """
    ctx = ctx or TransitionContext()
    key = (req.status, event)
    if key not in _TRANSITIONS:
        allowed = sorted(e.value for e in valid_events(req.status))
        raise StateError(
            f"{req.id}: {event.value} is not allowed from {req.status.value}. "
            f"Valid events: {allowed}"
        )
    _GUARDS[event](req, ctx)
    return _TRANSITIONS[key]


def failure_event(req: Request, max_attempts: int) -> Event:
    """RETRY while the bound allows another attempt, FAIL once it is reached."""
    return Event.FAIL if req.attempts + 1 >= max_attempts else Event.RETRY


def apply(req: Request, event: Event, ctx: TransitionContext | None = None,
          now: float | None = None) -> RequestStatus | None:
    """
    Validate then mutate `req` in memory.

    Rewrites `status` and `updated`, and applies the event's field effects:
    the rejection reason section, the attempt counter, and the claim marker.
    """
    ctx = ctx or TransitionContext()
    target = next_status(req, event, ctx)
    if target is None:
        return None

    if event == Event.REJECT and ctx.reason.strip() and not req.section("Rejection Reason"):
        req.append_section("Rejection Reason", ctx.reason)
    if event in (Event.RETRY, Event.FAIL):
        req.attempts += 1
    if event == Event.REQUEUE:
        req.attempts = 0
    if event == Event.CLAIM:
        req.claimed_by = ctx.actor or None
    elif target != RequestStatus.COMPLETED:
        req.claimed_by = None

    req.status = target
    req.updated = utc_now(now)
    return target
