"""
Accord — Request State Machine Tests

Tests:
  - Every allowed transition and its target status
  - Disallowed transitions raise StateError and leave the request untouched
  - Guards: approval never automated, rejection reason, claim from pending,
    contract finalization, retry/fail bound, target-owner and requester
  - Field effects: attempts, claimed_by, rejection section, requeue reset
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from accord.errors import OwnershipError, StateError
from accord.lifecycle import (
    Event,
    TransitionContext,
    apply,
    failure_event,
    next_status,
    valid_events,
)
from accord.types import RequestStatus, RequestType

from fakes import make_request


HUMAN = TransitionContext(actor="payments")
DAEMON = TransitionContext(actor="payments-daemon", automated=True)


# ═══════════════════════════════════════════════════════════════════
# Transition table
# ═══════════════════════════════════════════════════════════════════

class TestTransitions(unittest.TestCase):

    def test_valid_events_from_pending(self):
        self.assertEqual(
            set(valid_events(RequestStatus.PENDING)),
            {Event.APPROVE, Event.REJECT, Event.WITHDRAW, Event.CLAIM},
        )

    def test_terminal_states_have_no_events(self):
        for status in (RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.FAILED):
            self.assertEqual(valid_events(status), [])

    def test_happy_path(self):
        req = make_request()
        self.assertEqual(apply(req, Event.APPROVE, HUMAN), RequestStatus.APPROVED)
        self.assertEqual(apply(req, Event.CLAIM, DAEMON), RequestStatus.IN_PROGRESS)
        self.assertEqual(req.claimed_by, "payments-daemon")
        self.assertEqual(apply(req, Event.COMPLETE, DAEMON), RequestStatus.COMPLETED)
        self.assertEqual(req.status, RequestStatus.COMPLETED)

    def test_disallowed_transition_leaves_request_untouched(self):
        req = make_request(status=RequestStatus.COMPLETED)
        before = (req.status, req.updated, req.body)
        with self.assertRaises(StateError) as ctx:
            apply(req, Event.APPROVE, HUMAN)
        self.assertIn("Valid events", str(ctx.exception))
        self.assertEqual((req.status, req.updated, req.body), before)

    def test_updated_timestamp_rewritten(self):
        req = make_request(now=1_700_000_000)
        apply(req, Event.APPROVE, HUMAN, now=1_700_000_600)
        self.assertEqual(req.updated, "2023-11-14T22:23:20Z")
        self.assertEqual(req.created, "2023-11-14T22:13:20Z")


# ═══════════════════════════════════════════════════════════════════
# Guards
# ═══════════════════════════════════════════════════════════════════

class TestGuards(unittest.TestCase):

    def test_daemon_never_approves(self):
        with self.assertRaises(StateError):
            next_status(make_request(), Event.APPROVE, DAEMON)

    def test_only_target_owner_approves(self):
        with self.assertRaises(OwnershipError):
            next_status(make_request(), Event.APPROVE, TransitionContext(actor="web"))

    def test_reject_requires_reason(self):
        req = make_request()
        with self.assertRaises(StateError):
            apply(req, Event.REJECT, HUMAN)
        ctx = TransitionContext(actor="payments", reason="Out of scope")
        self.assertEqual(apply(req, Event.REJECT, ctx), RequestStatus.REJECTED)
        self.assertEqual(req.section("Rejection Reason"), "Out of scope")

    def test_withdraw_only_by_requester(self):
        req = make_request()
        with self.assertRaises(OwnershipError):
            next_status(req, Event.WITHDRAW, HUMAN)
        self.assertIsNone(next_status(req, Event.WITHDRAW, TransitionContext(actor="web")))

    def test_withdraw_only_while_pending(self):
        req = make_request(status=RequestStatus.APPROVED)
        with self.assertRaises(StateError):
            next_status(req, Event.WITHDRAW, TransitionContext(actor="web"))

    def test_pending_claim_needs_command_or_retry(self):
        with self.assertRaises(StateError):
            next_status(make_request(), Event.CLAIM, DAEMON)
        command = make_request(type=RequestType.COMMAND, command="status")
        self.assertEqual(next_status(command, Event.CLAIM, DAEMON), RequestStatus.IN_PROGRESS)
        retry = make_request(attempts=1)
        self.assertEqual(next_status(retry, Event.CLAIM, DAEMON), RequestStatus.IN_PROGRESS)

    def test_complete_needs_finalized_contract(self):
        req = make_request(status=RequestStatus.IN_PROGRESS,
                           related_contract="contracts/payments.yaml")
        with self.assertRaises(StateError):
            next_status(req, Event.COMPLETE, DAEMON)
        ctx = TransitionContext(actor="payments-daemon", automated=True, contract_finalized=True)
        self.assertEqual(next_status(req, Event.COMPLETE, ctx), RequestStatus.COMPLETED)


# ═══════════════════════════════════════════════════════════════════
# Retry bound
# ═══════════════════════════════════════════════════════════════════

class TestRetryBound(unittest.TestCase):

    def test_failure_event_by_attempt(self):
        req = make_request(status=RequestStatus.IN_PROGRESS)
        self.assertEqual(failure_event(req, 3), Event.RETRY)
        req.attempts = 1
        self.assertEqual(failure_event(req, 3), Event.RETRY)
        req.attempts = 2
        self.assertEqual(failure_event(req, 3), Event.FAIL)

    def test_retry_increments_and_releases_claim(self):
        req = make_request(status=RequestStatus.IN_PROGRESS, claimed_by="payments-daemon")
        self.assertEqual(apply(req, Event.RETRY, DAEMON), RequestStatus.PENDING)
        self.assertEqual(req.attempts, 1)
        self.assertIsNone(req.claimed_by)

    def test_retry_refused_at_bound(self):
        req = make_request(status=RequestStatus.IN_PROGRESS, attempts=2)
        with self.assertRaises(StateError):
            next_status(req, Event.RETRY, DAEMON)
        self.assertEqual(apply(req, Event.FAIL, DAEMON), RequestStatus.FAILED)
        self.assertEqual(req.attempts, 3)

    def test_fail_refused_below_bound(self):
        req = make_request(status=RequestStatus.IN_PROGRESS, attempts=0)
        with self.assertRaises(StateError):
            next_status(req, Event.FAIL, DAEMON)

    def test_requeue_resets_attempts(self):
        req = make_request(status=RequestStatus.IN_PROGRESS, attempts=2)
        self.assertEqual(apply(req, Event.REQUEUE, HUMAN), RequestStatus.PENDING)
        self.assertEqual(req.attempts, 0)
        with self.assertRaises(StateError):
            next_status(req, Event.CLAIM, DAEMON)


if __name__ == "__main__":
    unittest.main()
