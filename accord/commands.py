"""
Accord — Command Fast Path

`type: command` requests are answered synchronously by the daemon
without a worker and without human approval. Each executor returns a
Markdown report that becomes the request's `## Result` section.

    status       project name and record counts
    scan         structural check of every contract
    check-inbox  table of every inbox record
    validate     contracts plus request files
"""

from __future__ import annotations

from typing import Callable

from accord.errors import ConflictError, RecordParseError
from accord.records import REQUEST_GLOB, RecordStore, validate_contract, validate_request


def _contract_checks(store: RecordStore) -> list[tuple[str, list[str]]]:
    results = []
    for path in store.list_contracts():
        try:
            errors = validate_contract(store.read_contract_path(path))
        except (RecordParseError, ConflictError) as e:
            errors = [str(e)]
        results.append((path.name, errors))
    return results


def cmd_status(store: RecordStore, project: str = "") -> str:
    external = len(list(store.contracts_dir.glob("*.yaml"))) if store.contracts_dir.is_dir() else 0
    internal = len(list(store.internal_dir.glob("*.md"))) if store.internal_dir.is_dir() else 0
    inbox = sum(len(list(store.inbox(o).glob(REQUEST_GLOB))) for o in store.inbox_owners())
    archived = len(list(store.archive_dir.glob(REQUEST_GLOB))) if store.archive_dir.is_dir() else 0
    return (
        "### Status Report\n\n"
        f"- **Project**: {project or 'unknown'}\n"
        f"- **External contracts**: {external}\n"
        f"- **Internal contracts**: {internal}\n"
        f"- **Inbox items**: {inbox}\n"
        f"- **Archived items**: {archived}\n"
    )


def cmd_scan(store: RecordStore, project: str = "") -> str:
    lines = ["### Scan Report", ""]
    checks = _contract_checks(store)
    for name, errors in checks:
        if errors:
            lines.append(f"- **{name}**: FAIL")
            lines.extend(f"  - {e}" for e in errors)
        else:
            lines.append(f"- **{name}**: PASS")
    failed = sum(1 for _, errors in checks if errors)
    lines += ["", f"**Checked**: {len(checks)}, **Errors**: {failed}"]
    return "\n".join(lines) + "\n"


def cmd_check_inbox(store: RecordStore, project: str = "") -> str:
    lines = [
        "### Inbox Report",
        "",
        "| ID | Type | Status | From |",
        "|----|------|--------|------|",
    ]
    requests = store.scan()
    for req in requests:
        lines.append(f"| {req.id} | {req.type.value} | {req.status.value} | {req.from_} |")
    lines += ["", f"**Total**: {len(requests)} item(s)"]
    return "\n".join(lines) + "\n"


def cmd_validate(store: RecordStore, project: str = "") -> str:
    lines = ["### Validation Report", "", "#### Contracts"]
    checked = failed = 0
    for name, errors in _contract_checks(store):
        checked += 1
        if errors:
            failed += 1
            lines.append(f"- {name}: FAIL ({'; '.join(errors)})")
        else:
            lines.append(f"- {name}: PASS")

    lines += ["", "#### Requests"]
    for owner in store.inbox_owners():
        for path in sorted(store.inbox(owner).glob(REQUEST_GLOB)):
            checked += 1
            try:
                errors, _ = validate_request(store.read_request(path))
            except (RecordParseError, ConflictError) as e:
                errors = [str(e)]
            if errors:
                failed += 1
                lines.append(f"- {path.name}: FAIL ({'; '.join(errors)})")
            else:
                lines.append(f"- {path.name}: PASS")

    lines += ["", f"**Checked**: {checked}, **Errors**: {failed}"]
    return "\n".join(lines) + "\n"


COMMANDS: dict[str, Callable[..., str]] = {
    "status": cmd_status,
    "scan": cmd_scan,
    "check-inbox": cmd_check_inbox,
    "validate": cmd_validate,
}


def execute_command(name: str, store: RecordStore, project: str = "") -> str:
    handler = COMMANDS.get(name)
    if handler is None:
        return f"Unknown command: {name}. Supported: {', '.join(COMMANDS)}\n"
    return handler(store, project)
