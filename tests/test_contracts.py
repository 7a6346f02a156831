"""
Accord — Contract Registry Tests

Tests:
  - annotate: proposed + request id, idempotent, refuses a second request
  - finalize: only while the request is in progress, clears the annotation
  - promote: human-only, draft → stable
  - ownership: mirrored contracts are read-only
  - every save marks the owner dirty until published
"""

import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from accord.contracts import ContractRegistry
from accord.errors import OwnershipError, StateError
from accord.records import RecordStore
from accord.types import ContractStatus, RequestStatus

from fakes import make_request, write_contract


class ContractTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = RecordStore(Path(self.tmpdir) / ".accord")
        self.path = write_contract(self.store, "payments")
        write_contract(self.store, "ledger")
        self.registry = ContractRegistry(self.store, {"payments"})

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)


# ═══════════════════════════════════════════════════════════════════
# annotate / finalize
# ═══════════════════════════════════════════════════════════════════

class TestAnnotateFinalize(ContractTestCase):

    def test_annotate_marks_proposed(self):
        contract = self.registry.annotate("contracts/payments.yaml", "req-001-add-refunds")
        self.assertEqual(contract.status, ContractStatus.PROPOSED)
        reloaded = self.store.read_contract_path(self.path)
        self.assertEqual(reloaded.request, "req-001-add-refunds")

    def test_annotate_is_idempotent_for_same_request(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        contract = self.registry.annotate("payments", "req-001-add-refunds")
        self.assertEqual(contract.request, "req-001-add-refunds")

    def test_annotate_refuses_second_request(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        with self.assertRaises(StateError):
            self.registry.annotate("payments", "req-002-other")

    def test_finalize_clears_annotation(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        req = make_request(status=RequestStatus.IN_PROGRESS)
        contract = self.registry.finalize(".accord/contracts/payments.yaml", req)
        self.assertEqual(contract.status, ContractStatus.STABLE)
        self.assertIsNone(self.store.read_contract_path(self.path).request)

    def test_finalize_outside_completion_refused(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        with self.assertRaises(StateError):
            self.registry.finalize("payments", make_request(status=RequestStatus.APPROVED))
        self.assertTrue(self.store.read_contract_path(self.path).is_proposed)

    def test_finalize_other_request_refused(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        other = make_request("req-009-other", status=RequestStatus.IN_PROGRESS)
        with self.assertRaises(StateError):
            self.registry.finalize("payments", other)

    def test_finalize_without_annotation_is_noop(self):
        req = make_request(status=RequestStatus.IN_PROGRESS)
        contract = self.registry.finalize("payments", req)
        self.assertEqual(contract.status, ContractStatus.STABLE)
        self.assertEqual(self.registry.dirty, set())

    def test_missing_contract(self):
        with self.assertRaises(StateError):
            self.registry.annotate("contracts/nope.yaml", "req-001-add-refunds")

    def test_proposed_annotations(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        annotations = self.registry.proposed_annotations()
        self.assertEqual(list(annotations), ["req-001-add-refunds"])


# ═══════════════════════════════════════════════════════════════════
# promote / ownership
# ═══════════════════════════════════════════════════════════════════

class TestPromoteAndOwnership(ContractTestCase):

    def test_promote_draft(self):
        write_contract(self.store, "payments", status="draft")
        contract = self.registry.promote("payments")
        self.assertEqual(contract.status, ContractStatus.STABLE)

    def test_promote_requires_draft(self):
        with self.assertRaises(StateError):
            self.registry.promote("payments")

    def test_daemon_cannot_promote(self):
        write_contract(self.store, "payments", status="draft")
        daemon_registry = ContractRegistry(self.store, {"payments"}, automated=True)
        with self.assertRaises(StateError):
            daemon_registry.promote("payments")

    def test_mirrored_contract_is_read_only(self):
        with self.assertRaises(OwnershipError):
            self.registry.annotate("ledger", "req-001-add-refunds")
        self.assertEqual(self.store.read_contract_path(
            self.store.contracts_dir / "ledger.yaml").status, ContractStatus.STABLE)

    def test_internal_mirror_owned_by_directory(self):
        mirrored = self.store.internal_dir / "web" / "cart.md"
        mirrored.parent.mkdir(parents=True)
        mirrored.write_text("---\nid: cart\nstatus: draft\n---\n\nbody\n", encoding="utf-8")
        self.assertEqual(self.registry.owner_of(mirrored), "web")
        own = self.store.internal_dir / "payments.md"
        self.assertEqual(self.registry.owner_of(own), "payments")

    def test_mutation_marks_owner_dirty(self):
        self.registry.annotate("payments", "req-001-add-refunds")
        self.assertEqual(self.registry.dirty, {"payments"})


if __name__ == "__main__":
    unittest.main()
