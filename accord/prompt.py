"""
Accord — Worker Task Payload

Renders the text handed to the external worker: the request verbatim,
registry entries inline (they are short), and contract paths only (an
OpenAPI document can be large; the worker reads what it needs).
"""

from __future__ import annotations

from accord.records import RecordStore, encode_request
from accord.types import RegistryEntry, Request


def _display_path(store: RecordStore, path) -> str:
    try:
        return f".accord/{path.relative_to(store.root).as_posix()}"
    except ValueError:
        return str(path)


def _render_registry(entry: RegistryEntry) -> str:
    name = entry.path.name if entry.path is not None else f"{entry.name}.md"
    lines = [f"\n### Registry: {name}", f"- type: {entry.type}"]
    if entry.directory:
        lines.append(f"- directory: {entry.directory}")
    for label, values in (("owns", entry.owns), ("capabilities", entry.capabilities),
                          ("depends on", entry.depends_on)):
        if values:
            lines.append(f"- {label}: {', '.join(values)}")
    if entry.body.strip():
        lines.append(entry.body.strip())
    return "\n".join(lines) + "\n"


def build_task_payload(req: Request, store: RecordStore, service: str) -> str:
    context = "".join(_render_registry(entry) for entry in store.list_registry())

    contracts = [_display_path(store, p) for p in store.list_contracts()]
    if contracts:
        listing = "".join(f"\n  - {p}" for p in contracts)
        context += f"\n### Contract files (read as needed):{listing}\n"

    context_section = f"\n## Service Context\n{context}" if context else ""
    related = ""
    if req.related_contract:
        related = (
            f"\nThe related contract is `{req.related_contract}`. Update it as part of this "
            f"request; leave its `x-accord-request` annotation for the daemon to clear.\n"
        )

    return (
        f'You are running as a headless Accord agent for the "{service}" service.\n'
        f"Process the following request autonomously; no user confirmation is needed.\n\n"
        f"## Request\n"
        f"Path: {req.filename}\n"
        f"{encode_request(req)}"
        f"{context_section}{related}\n"
        f"## Instructions\n"
        f"1. Implement the proposed changes in the codebase\n"
        f"2. Update the relevant contract file if needed (see .accord/contracts/)\n"
        f"3. If the change requires work from another owner, create a request in "
        f".accord/comms/inbox/{{target}}/\n"
        f"4. Optionally set the request status to 'completed' and move it to "
        f".accord/comms/archive/\n"
        f"5. Do NOT push; the daemon publishes the result\n"
    )
