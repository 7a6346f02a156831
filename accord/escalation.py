"""
Accord — Escalation Builder

When the dispatch daemon gives up on a request (attempt bound reached),
it raises a synthetic request toward the orchestrator inbox so a human
picks it up. The escalation carries enough context to act without
re-reading the daemon logs:

  1. Which request failed and where it was archived
  2. Why it failed and how many attempts were made
  3. The original request body, verbatim

Escalations are ordinary request records: `priority: high`,
`originated_from` = the failed request id, addressed to the configured
orchestrator. Exactly one is produced per failed request.
"""

from __future__ import annotations

import time
from typing import Any

from accord.types import Priority, Request, RequestType, Scope


def escalation_id(request_id: str, now: float | None = None) -> str:
    epoch = int(time.time() if now is None else now)
    return f"req-escalation-{request_id}-{epoch}"


def build_escalation(
    failed: Request,
    reason: str,
    service: str,
    orchestrator: str = "orchestrator",
    now: float | None = None,
) -> Request:
    """
    Build the escalation request for a failed record.

    Args:
        failed: The request as archived with status `failed`
        reason: Human-readable failure reason (timeout / exit code)
        service: The daemon's service, used as the requester
        orchestrator: Target inbox name
    """
    location = str(failed.path) if failed.path else failed.filename
    original = _strip_failure_sections(failed.body)

    body = (
        f"## What\n\n"
        f"Automated processing failed for request `{failed.id}`.\n\n"
        f"## Detail\n\n"
        f"- **Reason**: {reason}\n"
        f"- **Request**: {failed.id}\n"
        f"- **Attempts**: {failed.attempts}\n"
        f"- **Location**: {location}\n"
        f"- **Service**: {service}\n\n"
        f"## Proposed Change\n\n"
        f"Manual review needed. The original request has been marked as `failed` "
        f"and archived.\n\n"
        f"## Original Request\n\n"
        f"{original or '(empty body)'}"
    )
    return Request.create(
        escalation_id(failed.id, now),
        from_=service,
        to=orchestrator,
        body=body,
        type=RequestType.OTHER,
        priority=Priority.HIGH,
        scope=Scope.EXTERNAL,
        now=now,
        originated_from=failed.id,
    )


def _strip_failure_sections(body: str) -> str:
    """Drop the daemon's own failure sections from the quoted body."""
    kept: list[str] = []
    skipping = False
    for line in body.splitlines():
        if line.startswith("## "):
            title = line[3:].strip()
            skipping = title == "Failure" or (title.startswith("Attempt ") and title.endswith(" Failed"))
        if not skipping:
            kept.append(line)
    return "\n".join(kept).strip()


def summarize(escalation: Request) -> dict[str, Any]:
    """Compact dict for the daemon status view."""
    return {
        "id": escalation.id,
        "originated_from": escalation.originated_from,
        "to": escalation.to,
        "priority": escalation.priority.value,
    }
