"""
Accord — Hub Sync Tests

Tests:
  - Pull delivers new requests into owned inboxes
  - Archived requests are never re-delivered; a pending copy reopens
  - Pending requests withdrawn on the hub are dropped locally
  - Push: outgoing requests, archive moves, withdrawals, contracts
  - Mirrors of other owners' contracts are never pushed back
  - Push rejected by a moved remote: rebase + retry up to the bound
  - Same-record conflict on pull is surfaced, never retried
  - End-to-end over real git repositories (skipped without git)
"""

import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from accord.errors import ConflictError, SyncError
from accord.history import HistoryLog
from accord.records import RecordStore
from accord.retry import RetryPolicy
from accord.sync import RepoModel, SyncEngine
from accord.types import RequestStatus

from fakes import FakeVcs, make_request, write_contract


def _no_sleep(_):
    pass


class SyncTestCase(unittest.TestCase):
    service = "payments"

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.project = Path(self.tmpdir) / self.service
        self.vcs = FakeVcs()
        self.engine = self.make_engine(self.vcs)
        self.local = self.engine.local
        self.hub = self.engine.hub
        self.hub.inbox_root.mkdir(parents=True)
        self.hub.archive_dir.mkdir(parents=True)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def make_engine(self, vcs, **kwargs):
        return SyncEngine(
            self.project, self.service, {self.service},
            repo_model=RepoModel.MULTI_REPO, hub_url="unused", vcs=vcs,
            policy=RetryPolicy(max_attempts=3), sleep_fn=_no_sleep, **kwargs,
        )

    def hub_write(self, req, archive=False):
        if archive:
            return self.hub.write_request(req, self.hub.archive_dir / req.filename)
        return self.hub.write_request(req, self.hub.inbox(req.to) / req.filename)


# ═══════════════════════════════════════════════════════════════════
# Pull
# ═══════════════════════════════════════════════════════════════════

class TestPull(SyncTestCase):

    def test_delivers_new_request(self):
        self.hub_write(make_request())
        report = self.engine.pull()
        self.assertEqual(report.delivered, ["req-001-add-refunds"])
        self.assertIsNotNone(self.local.in_inbox("req-001-add-refunds"))
        self.assertEqual(self.vcs.pulls, 1)

    def test_does_not_overwrite_local_progress(self):
        self.hub_write(make_request())
        self.local.create_request(make_request(status=RequestStatus.APPROVED))
        self.engine.pull()
        self.assertEqual(self.local.find_request("req-001-add-refunds").status,
                         RequestStatus.APPROVED)

    def test_archived_request_not_redelivered(self):
        self.local.archive_request(make_request(status=RequestStatus.COMPLETED))
        self.hub_write(make_request(status=RequestStatus.IN_PROGRESS))
        report = self.engine.pull()
        self.assertEqual(report.discarded, ["req-001-add-refunds"])
        self.assertIsNone(self.local.in_inbox("req-001-add-refunds"))

    def test_pending_copy_of_archived_request_reopens(self):
        self.local.archive_request(make_request(status=RequestStatus.COMPLETED))
        self.hub_write(make_request(now=1_700_100_000))
        report = self.engine.pull()
        self.assertEqual(report.reopened, ["req-001-add-refunds"])
        self.assertEqual(self.local.find_request("req-001-add-refunds").status,
                         RequestStatus.PENDING)

    def test_stale_pending_copy_of_archived_request_discarded(self):
        self.local.archive_request(make_request(status=RequestStatus.COMPLETED,
                                                now=1_700_000_500))
        self.hub_write(make_request(now=1_700_000_000))
        report = self.engine.pull()
        self.assertEqual(report.discarded, ["req-001-add-refunds"])
        self.assertEqual(report.reopened, [])
        self.assertIsNone(self.local.in_inbox("req-001-add-refunds"))

    def test_withdrawn_request_dropped(self):
        self.local.create_request(make_request())
        report = self.engine.pull()
        self.assertEqual(report.dropped, ["req-001-add-refunds"])
        self.assertIsNone(self.local.in_inbox("req-001-add-refunds"))

    def test_locally_created_request_kept(self):
        req = make_request(from_="orchestrator")
        self.local.create_request(req)
        HistoryLog(self.local.history_dir).record(req.id, "new", "pending", "orchestrator")
        report = self.engine.pull()
        self.assertEqual(report.dropped, [])

    def test_mirrors_other_contracts_only(self):
        own = write_contract(self.local, "payments", status="draft")
        write_contract(self.hub, "payments", status="stable")
        write_contract(self.hub, "ledger")
        report = self.engine.pull()
        self.assertEqual(report.mirrored, 1)
        self.assertTrue((self.local.contracts_dir / "ledger.yaml").is_file())
        self.assertIn("x-accord-status: draft", own.read_text())

    def test_outgoing_request_tracks_hub_archive(self):
        out = make_request("req-005-ask-web", from_="payments", to="web")
        self.local.create_request(out)
        done = make_request("req-005-ask-web", from_="payments", to="web",
                            status=RequestStatus.COMPLETED)
        self.hub_write(done, archive=True)
        self.engine.pull()
        self.assertIsNone(self.local.in_inbox("req-005-ask-web"))
        self.assertEqual(self.local.archived("req-005-ask-web").status, RequestStatus.COMPLETED)

    def test_pull_conflict_surfaces_without_retry(self):
        vcs = FakeVcs(conflict_paths=["comms/inbox/payments/req-001-add-refunds.md"])
        engine = self.make_engine(vcs)
        with self.assertRaises(ConflictError) as ctx:
            engine.pull()
        self.assertEqual(ctx.exception.paths, ["comms/inbox/payments/req-001-add-refunds.md"])
        self.assertEqual(vcs.pulls, 1)

    def test_missing_hub(self):
        shutil.rmtree(self.engine.hub_dir)
        with self.assertRaises(SyncError):
            self.engine.pull()


# ═══════════════════════════════════════════════════════════════════
# Push
# ═══════════════════════════════════════════════════════════════════

class TestPush(SyncTestCase):

    def test_outgoing_request_published_once(self):
        self.local.create_request(make_request("req-005-ask-web", from_="payments", to="web"))
        report = self.engine.push()
        self.assertIn("comms/inbox/web/req-005-ask-web.md", report.copied)
        self.assertTrue(report.committed)

        # Target owner moved it on the hub; our stale copy must not win
        moved = make_request("req-005-ask-web", from_="payments", to="web",
                             status=RequestStatus.APPROVED)
        self.hub_write(moved)
        report = self.engine.push()
        self.assertEqual(report.copied, [])
        self.assertEqual(self.hub.find_request("req-005-ask-web").status, RequestStatus.APPROVED)

    def test_incoming_status_mirrored(self):
        self.hub_write(make_request())
        self.local.create_request(make_request(status=RequestStatus.APPROVED))
        self.engine.push()
        self.assertEqual(self.hub.find_request("req-001-add-refunds").status,
                         RequestStatus.APPROVED)

    def test_archive_removes_stale_hub_copy(self):
        self.hub_write(make_request(status=RequestStatus.IN_PROGRESS))
        self.local.archive_request(make_request(status=RequestStatus.COMPLETED,
                                                now=1_700_000_500))
        report = self.engine.push()
        self.assertIn("comms/inbox/payments/req-001-add-refunds.md", report.removed)
        self.assertEqual(self.hub.archived("req-001-add-refunds").status,
                         RequestStatus.COMPLETED)
        self.assertIsNone(self.hub.in_inbox("req-001-add-refunds"))

    def test_reopened_hub_copy_survives_archive_push(self):
        self.local.archive_request(make_request(status=RequestStatus.COMPLETED))
        self.hub_write(make_request(now=1_700_100_000))
        self.engine.push()
        self.assertIsNotNone(self.hub.in_inbox("req-001-add-refunds"))

    def test_withdrawal_removes_pending_hub_copy(self):
        engine = SyncEngine(self.project, "web", {"web"}, repo_model="multi-repo",
                            vcs=self.vcs, sleep_fn=_no_sleep)
        self.hub_write(make_request())
        engine.history.record("req-001-add-refunds", "pending", "withdrawn", "web",
                              to="payments")
        report = engine.push()
        self.assertEqual(report.removed, ["comms/inbox/payments/req-001-add-refunds.md"])

    def test_withdrawal_never_removes_approved_copy(self):
        engine = SyncEngine(self.project, "web", {"web"}, repo_model="multi-repo",
                            vcs=self.vcs, sleep_fn=_no_sleep)
        self.hub_write(make_request(status=RequestStatus.APPROVED))
        engine.history.record("req-001-add-refunds", "pending", "withdrawn", "web",
                              to="payments")
        engine.push()
        self.assertIsNotNone(self.hub.in_inbox("req-001-add-refunds"))

    def test_own_contract_pushed_mirror_not(self):
        write_contract(self.local, "payments")
        write_contract(self.local, "ledger")
        report = self.engine.push()
        self.assertIn("contracts/payments.yaml", report.copied)
        self.assertFalse((self.hub.contracts_dir / "ledger.yaml").exists())

    def test_history_pushed(self):
        self.engine.history.record("req-001-add-refunds", "pending", "approved", "payments")
        report = self.engine.push()
        self.assertTrue(any(p.startswith("comms/history/") for p in report.copied))


class TestPushRetry(SyncTestCase):

    def test_rejected_push_rebases_and_retries(self):
        vcs = FakeVcs(reject_pushes=2)
        engine = self.make_engine(vcs)
        engine.local.create_request(make_request("req-005-ask-web", from_="payments", to="web"))
        report = engine.push()
        self.assertEqual(report.attempts, 3)
        self.assertEqual(vcs.pushes, 3)
        self.assertEqual(vcs.rebases, 2)

    def test_retry_bound_exhausted(self):
        vcs = FakeVcs(reject_pushes=5)
        engine = self.make_engine(vcs)
        engine.local.create_request(make_request("req-005-ask-web", from_="payments", to="web"))
        with self.assertRaises(SyncError) as ctx:
            engine.push()
        self.assertIn("manual resolution required", str(ctx.exception))
        self.assertEqual(vcs.pushes, 3)


class TestMonorepo(unittest.TestCase):

    def test_push_commits_and_publishes(self):
        with tempfile.TemporaryDirectory() as tmp:
            vcs = FakeVcs()
            engine = SyncEngine(tmp, "payments", repo_model="monorepo", vcs=vcs)
            engine.init(["payments", "web"])
            self.assertTrue(RecordStore(Path(tmp) / ".accord").inbox("web").is_dir())
            report = engine.push("accord: test")
            self.assertTrue(report.committed)
            self.assertEqual(vcs.commits, ["accord: test"])
            self.assertEqual(vcs.pushes, 1)


# ═══════════════════════════════════════════════════════════════════
# Real git
# ═══════════════════════════════════════════════════════════════════

@unittest.skipUnless(shutil.which("git"), "git not installed")
class TestGitRoundTrip(unittest.TestCase):

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self._env = {k: os.environ.get(k) for k in
                     ("ACCORD_GIT_AUTHOR_NAME", "ACCORD_GIT_AUTHOR_EMAIL")}
        os.environ["ACCORD_GIT_AUTHOR_NAME"] = "Accord Test"
        os.environ["ACCORD_GIT_AUTHOR_EMAIL"] = "accord@example.com"
        self.hub_url = str(self.tmpdir / "hub.git")
        subprocess.run(["git", "init", "--bare", "--quiet", self.hub_url], check=True)

    def tearDown(self):
        for key, value in self._env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def engine(self, service):
        return SyncEngine(self.tmpdir / service, service, {service},
                          repo_model="multi-repo", hub_url=self.hub_url, sleep_fn=_no_sleep)

    def test_request_travels_between_replicas(self):
        payments = self.engine("payments")
        payments.init(["payments", "web"])
        self.assertTrue(payments.hub.inbox("web").is_dir())

        web = self.engine("web")
        web.init(["payments", "web"])
        web.local.create_request(make_request(from_="web", to="payments"))
        self.assertTrue(web.push().committed)

        report = payments.pull()
        self.assertEqual(report.delivered, ["req-001-add-refunds"])

        req = payments.local.find_request("req-001-add-refunds")
        req.status = RequestStatus.COMPLETED
        payments.local.archive_request(req)
        payments.push()

        web.pull()
        self.assertIsNone(web.local.in_inbox("req-001-add-refunds"))
        self.assertEqual(web.local.archived("req-001-add-refunds").status,
                         RequestStatus.COMPLETED)

    def test_concurrent_push_rebases_and_keeps_both_sides(self):
        payments = self.engine("payments")
        payments.init(["payments", "web"])
        web = self.engine("web")
        web.init(["payments", "web"])

        web.local.create_request(make_request("req-001-a", from_="web", to="payments"))
        payments.local.create_request(make_request("req-002-b", from_="payments", to="web"))

        publish = web.vcs.push
        raced = []

        def push_after_other_replica():
            if not raced:
                raced.append(True)
                self.assertTrue(payments.push().committed)
            publish()

        web.vcs.push = push_after_other_replica
        report = web.push()
        self.assertGreater(report.attempts, 1)

        observer = self.engine("mobile")
        observer.init(["payments", "web"])
        self.assertIsNotNone(observer.hub.in_inbox("req-001-a"))
        self.assertIsNotNone(observer.hub.in_inbox("req-002-b"))


if __name__ == "__main__":
    unittest.main()
