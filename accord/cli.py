"""
Accord — Command Line Interface

Usage:
    # Hub replica
    accord sync init|pull|push

    # Dispatch daemon
    accord agent run-once
    accord agent start [--interval 10]
    accord agent status

    # Requests (human decisions)
    accord request list [--status pending] [--all]
    accord request create --to payments --type api-addition --what "..."
    accord request approve req-001-add-refunds
    accord request reject req-001-add-refunds --reason "Out of scope"
    accord request withdraw req-001-add-refunds
    accord request requeue req-001-add-refunds --reason "Scope changed"
    accord request validate [FILE ...]

    # Contracts
    accord contract annotate contracts/payments.yaml req-001-add-refunds
    accord contract finalize req-001-add-refunds
    accord contract promote contracts/payments.yaml

    # Derived requests
    accord deps check [--file .accord/dependencies.yaml] [--since HEAD~1]
    accord cascade create --parent req-010-rename --to web,mobile

Every command reads `.accord/config.yaml` under --project-dir. Human
decisions in a multi-repo setup are pushed to the hub right away unless
--no-push is given.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from accord.cascade import check_dependencies, create_cascade, load_dependencies
from accord.config import AccordConfig, load_accord_config
from accord.contracts import ContractRegistry
from accord.daemon import Daemon
from accord.errors import AccordError, RecordParseError
from accord.history import HistoryLog
from accord.logging import configure_logging
from accord.operations import RequestOperations
from accord.records import RecordStore, validate_request
from accord.retry import RetryPolicy
from accord.sync import RepoModel, SyncEngine
from accord.types import Priority, Request, RequestStatus, RequestType, Scope
from accord.vcs import GitVcs


@dataclass
class Workspace:
    """Everything a command needs, built once from the config."""
    cfg: AccordConfig
    store: RecordStore
    history: HistoryLog
    contracts: ContractRegistry
    ops: RequestOperations
    sync: SyncEngine
    actor: str


def _workspace(args) -> Workspace:
    cfg = load_accord_config(args.project_dir, service=args.service, env=args.env or "")
    store = RecordStore(cfg.accord_dir)
    history = HistoryLog(store.history_dir)
    owned = cfg.owned_names()
    actor = args.actor or cfg.service
    contracts = ContractRegistry(store, owned)
    ops = RequestOperations(store, history, contracts, actor=actor,
                            max_attempts=cfg.dispatcher.max_attempts)
    sync = SyncEngine(
        cfg.project_dir, cfg.service, owned,
        repo_model=cfg.repo_model, hub_url=cfg.hub,
        policy=RetryPolicy(max_attempts=cfg.dispatcher.push_retries),
    )
    return Workspace(cfg, store, history, contracts, ops, sync, actor)


def _act_as(args, ws: Workspace, owner: str) -> None:
    """Act for a module this service owns unless --actor was given."""
    if args.actor is None and owner in ws.cfg.owned_names():
        ws.actor = ws.ops.actor = owner


def _publish(args, ws: Workspace, message: str) -> None:
    if ws.sync.repo_model != RepoModel.MULTI_REPO or args.no_push:
        if ws.contracts.dirty:
            print(f"  Contract change for {', '.join(sorted(ws.contracts.dirty))} not pushed; "
                  "commit or run 'accord sync push' to publish it", file=sys.stderr)
        return
    report = ws.sync.push(message)
    ws.contracts.dirty.clear()
    if report.committed:
        print(f"  Pushed to hub ({len(report.copied)} copied, {len(report.removed)} removed)",
              file=sys.stderr)


# ═══════════════════════════════════════════════════════════════════
# sync
# ═══════════════════════════════════════════════════════════════════

def cmd_sync(args, ws: Workspace):
    if args.action == "init":
        ws.sync.init(s.name for s in ws.cfg.services)
        print(f"Hub ready at {ws.sync.hub_dir}", file=sys.stderr)
    elif args.action == "pull":
        report = ws.sync.pull()
        print(f"Delivered: {len(report.delivered)}  Reopened: {len(report.reopened)}  "
              f"Discarded: {len(report.discarded)}  Dropped: {len(report.dropped)}  "
              f"Mirrored: {report.mirrored}", file=sys.stderr)
        for rid in report.delivered + report.reopened:
            print(f"  New request: {rid}")
    elif args.action == "push":
        report = ws.sync.push()
        if report.committed:
            print(f"Pushed {len(report.copied)} copied / {len(report.removed)} removed "
                  f"(attempts: {report.attempts})", file=sys.stderr)
        else:
            print("No changes to push", file=sys.stderr)


# ═══════════════════════════════════════════════════════════════════
# agent
# ═══════════════════════════════════════════════════════════════════

def cmd_agent(args, ws: Workspace):
    if args.interval is not None:
        ws.cfg.dispatcher.poll_interval = args.interval
    if args.timeout is not None:
        ws.cfg.dispatcher.request_timeout = args.timeout
    daemon = Daemon.from_config(ws.cfg)

    if args.action == "run-once":
        report = daemon.run_once()
        print(f"Tick {report.tick}: completed {len(report.completed)}, "
              f"retried {len(report.retried)}, failed {len(report.failed)}, "
              f"conflicts {len(report.conflicts)}", file=sys.stderr)
        if report.sync_error:
            print(f"  Sync error: {report.sync_error}", file=sys.stderr)
        for esc in report.escalations:
            print(f"  Escalated: {esc}", file=sys.stderr)
    elif args.action == "start":
        print(f"Accord agent for {daemon.service} (interval {daemon.config.poll_interval}s); "
              f"Ctrl-C to stop", file=sys.stderr)
        try:
            daemon.run_forever()
        except KeyboardInterrupt:
            daemon.stop()
        print(f"Stopped after {daemon.state.ticks} tick(s)", file=sys.stderr)
    elif args.action == "status":
        print(json.dumps(daemon.status(), indent=2))


# ═══════════════════════════════════════════════════════════════════
# request
# ═══════════════════════════════════════════════════════════════════

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_NUMBERED_ID_RE = re.compile(r"^req-(\d+)-")


def _next_request_id(store: RecordStore, summary: str) -> str:
    highest = 0
    for req in store.scan() + store.list_archive():
        m = _NUMBERED_ID_RE.match(req.id)
        if m:
            highest = max(highest, int(m.group(1)))
    slug = _SLUG_RE.sub("-", summary.lower()).strip("-")[:40].strip("-") or "request"
    return f"req-{highest + 1:03d}-{slug}"


def cmd_request(args, ws: Workspace):
    if args.action == "list":
        owners = None if args.all else sorted(ws.cfg.owned_names())
        requests = sorted(ws.store.scan(owners), key=lambda r: r.sort_key())
        if args.status:
            requests = [r for r in requests if r.status.value == args.status]
        if not requests:
            print("No requests.", file=sys.stderr)
            return
        print(f"  {'ID':40s} {'To':14s} {'Status':12s} {'Priority':9s} From")
        print(f"  {'─' * 40} {'─' * 14} {'─' * 12} {'─' * 9} {'─' * 14}")
        for r in requests:
            print(f"  {r.id:40s} {r.to:14s} {r.status.value:12s} {r.priority.value:9s} {r.from_}")
        return

    if args.action == "validate":
        paths = [Path(p) for p in args.files] or [
            r.path for r in ws.store.scan() if r.path is not None
        ]
        failures = 0
        for path in paths:
            try:
                errors, warnings = validate_request(ws.store.read_request(path))
            except RecordParseError as e:
                errors, warnings = e.errors, []
            status = "FAIL" if errors else "PASS"
            print(f"  {status}  {path}")
            for e in errors:
                print(f"        error: {e}")
            for w in warnings:
                print(f"        warning: {w}")
            failures += bool(errors)
        if failures:
            sys.exit(1)
        return

    if args.action == "create":
        if args.type == RequestType.COMMAND.value and not args.command_name:
            raise AccordError("type command requires --command")
        body = (
            f"## What\n\n{args.what}\n\n"
            f"## Proposed Change\n\n{args.proposed or 'TBD'}\n\n"
            f"## Why\n\n{args.why or 'TBD'}\n\n"
            f"## Impact\n\n{args.impact or 'TBD'}"
        )
        req = Request.create(
            args.id or _next_request_id(ws.store, args.what),
            from_=ws.actor,
            to=args.to,
            body=body,
            type=RequestType(args.type),
            priority=Priority(args.priority),
            scope=Scope(args.scope),
            related_contract=args.related_contract,
            command=args.command_name,
        )
        ws.store.create_request(req)
        ws.history.record(req.id, "new", req.status.value, ws.actor, to=req.to)
        print(f"Created {req.id} → {req.to}")
        _publish(args, ws, f"accord({ws.actor}): create {req.id}")
        return

    req = ws.ops.load(args.request_id)
    _act_as(args, ws, req.from_ if args.action == "withdraw" else req.to)
    if args.action == "approve":
        req = ws.ops.approve(req)
    elif args.action == "reject":
        req = ws.ops.reject(req, reason=args.reason)
    elif args.action == "withdraw":
        req = ws.ops.withdraw(req)
        print(f"{req.id}: withdrawn")
        _publish(args, ws, f"accord({ws.actor}): withdraw {req.id}")
        return
    elif args.action == "requeue":
        req = ws.ops.requeue(req, reason=args.reason)
    else:
        raise AccordError(f"unknown request action: {args.action}")
    print(f"{req.id}: {req.status.value}")
    _publish(args, ws, f"accord({ws.actor}): {args.action} {req.id}")


# ═══════════════════════════════════════════════════════════════════
# contract
# ═══════════════════════════════════════════════════════════════════

def cmd_contract(args, ws: Workspace):
    if args.action == "annotate":
        contract = ws.contracts.annotate(args.contract, args.request_id)
        print(f"{contract.path}: {contract.status.value} ({contract.request})")
    elif args.action == "finalize":
        # The annotation is cleared only as part of completing its request
        req = ws.ops.load(args.request_id)
        _act_as(args, ws, req.to)
        ws.ops.complete(req)
        print(f"{req.id}: {req.status.value}; contract {req.related_contract} finalized")
    elif args.action == "promote":
        contract = ws.contracts.promote(args.contract)
        print(f"{contract.path}: {contract.status.value}")
    _publish(args, ws, f"accord({ws.actor}): contract {args.action}")


# ═══════════════════════════════════════════════════════════════════
# deps / cascade
# ═══════════════════════════════════════════════════════════════════

def cmd_deps(args, ws: Workspace):
    deps_file = Path(args.file) if args.file else ws.store.root / "dependencies.yaml"
    edges = load_dependencies(deps_file)
    # Other owners' contracts are mirrored locally by sync pull
    created = check_dependencies(
        ws.store, edges, GitVcs(ws.cfg.project_dir), since=args.since,
        vcs_root=ws.cfg.project_dir, history=ws.history,
    )
    for req in created:
        print(f"  Created notification: {req.id} → {req.to}")
    if not created:
        print("No contract changes detected in dependencies", file=sys.stderr)


def cmd_cascade(args, ws: Workspace):
    targets = [t for t in args.to.split(",") if t.strip()]
    created = create_cascade(
        ws.store, args.parent, targets,
        from_=args.from_ or ws.actor,
        body=args.body or "",
        type=RequestType(args.type),
        priority=Priority(args.priority),
        history=ws.history,
    )
    for child in created:
        print(f"  Created child request: {child.id} → {child.to}")
    if not created:
        print("All children already exist; parent links verified", file=sys.stderr)
    _publish(args, ws, f"accord({ws.actor}): cascade {args.parent}")


# ═══════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accord",
        description="Accord: cross-repository request coordination",
    )
    parser.add_argument("--project-dir", "-C", default=".", help="Repository root")
    parser.add_argument("--service", default=None, help="Override the service name")
    parser.add_argument("--actor", default=None, help="Acting owner (default: the service)")
    parser.add_argument("--env", default=None, help="Config overlay profile")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING")
    parser.add_argument("--no-push", action="store_true",
                        help="Do not push human decisions to the hub")
    subs = parser.add_subparsers(dest="command")

    # sync
    sync_p = subs.add_parser("sync", help="Synchronize with the hub")
    sync_p.add_argument("action", choices=["init", "pull", "push"])

    # agent
    agent_p = subs.add_parser("agent", help="Run the dispatch daemon")
    agent_p.add_argument("action", choices=["run-once", "start", "status"])
    agent_p.add_argument("--interval", type=float, default=None, help="Poll interval (s)")
    agent_p.add_argument("--timeout", type=float, default=None, help="Worker timeout (s)")

    # request
    req_p = subs.add_parser("request", help="Inspect and decide on requests")
    req_subs = req_p.add_subparsers(dest="action", required=True)
    list_p = req_subs.add_parser("list", help="List inbox requests")
    list_p.add_argument("--status", choices=[s.value for s in RequestStatus])
    list_p.add_argument("--all", action="store_true", help="Include every inbox")
    validate_p = req_subs.add_parser("validate", help="Validate request files")
    validate_p.add_argument("files", nargs="*")
    create_p = req_subs.add_parser("create", help="Create a request")
    create_p.add_argument("--to", required=True)
    create_p.add_argument("--what", required=True)
    create_p.add_argument("--proposed", default="")
    create_p.add_argument("--why", default="")
    create_p.add_argument("--impact", default="")
    create_p.add_argument("--id", default=None)
    create_p.add_argument("--type", default="other", choices=[t.value for t in RequestType])
    create_p.add_argument("--priority", default="medium", choices=[p.value for p in Priority])
    create_p.add_argument("--scope", default="external", choices=[s.value for s in Scope])
    create_p.add_argument("--related-contract", default=None)
    create_p.add_argument("--command", dest="command_name", default=None)
    for name in ("approve", "withdraw"):
        p = req_subs.add_parser(name, help=f"{name.capitalize()} a request")
        p.add_argument("request_id")
    for name in ("reject", "requeue"):
        p = req_subs.add_parser(name, help=f"{name.capitalize()} a request")
        p.add_argument("request_id")
        p.add_argument("--reason", default="")

    # contract
    con_p = subs.add_parser("contract", help="Contract lifecycle")
    con_subs = con_p.add_subparsers(dest="action", required=True)
    ann_p = con_subs.add_parser("annotate", help="Mark a contract proposed for a request")
    ann_p.add_argument("contract")
    ann_p.add_argument("request_id")
    fin_p = con_subs.add_parser("finalize", help="Complete a request and clear its annotation")
    fin_p.add_argument("request_id")
    pro_p = con_subs.add_parser("promote", help="Promote a draft contract to stable")
    pro_p.add_argument("contract")

    # deps
    deps_p = subs.add_parser("deps", help="Cross-owner dependency notifications")
    deps_p.add_argument("action", choices=["check"])
    deps_p.add_argument("--file", default=None, help="dependencies.yaml")
    deps_p.add_argument("--since", default="HEAD~1")

    # cascade
    cas_p = subs.add_parser("cascade", help="Fan a request out to several owners")
    cas_p.add_argument("action", choices=["create"])
    cas_p.add_argument("--parent", required=True)
    cas_p.add_argument("--to", required=True, help="Comma-separated targets")
    cas_p.add_argument("--body", default="")
    cas_p.add_argument("--type", default="other",
                       choices=[t.value for t in RequestType if t != RequestType.COMMAND])
    cas_p.add_argument("--priority", default="medium", choices=[p.value for p in Priority])
    cas_p.add_argument("--from", dest="from_", default=None)

    return parser


_HANDLERS = {
    "sync": cmd_sync,
    "agent": cmd_agent,
    "request": cmd_request,
    "contract": cmd_contract,
    "deps": cmd_deps,
    "cascade": cmd_cascade,
}


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        ws = _workspace(args)
        level = args.log_level or ("DEBUG" if ws.cfg.dispatcher.debug else "WARNING")
        log_file = None
        if args.command == "agent" and args.action == "start":
            level = args.log_level or ("DEBUG" if ws.cfg.dispatcher.debug else "INFO")
            log_file = str(ws.store.logs_dir / f"daemon-{ws.cfg.service}.log")
        configure_logging(level=level, service_name=f"accord.{ws.cfg.service}",
                          log_file=log_file)
        _HANDLERS[args.command](args, ws)
    except AccordError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
