"""
Accord — Error Taxonomy

Every failure the protocol can surface, rooted at AccordError so callers
can catch the whole family at the CLI boundary.

Propagation:
  - StateError, OwnershipError: local, non-retryable, raised to the caller
  - ConflictError: stops automated processing of the affected record only
  - SyncError: fatal for the current tick, never for the daemon process
  - WorkerTimeout, WorkerFailure: retried per record up to the attempt
    bound, then converted into a `failed` status plus escalation
"""

from __future__ import annotations


class AccordError(Exception):
    """Base class for all Accord errors."""
    pass


class ConfigError(AccordError):
    """Raised when config.yaml is missing or malformed."""
    pass


class RecordParseError(AccordError):
    """Raised when a record file does not match its schema."""

    def __init__(self, path: str, errors: list[str]):
        self.path = path
        self.errors = list(errors)
        super().__init__(f"{path}: " + "; ".join(self.errors))


class StateError(AccordError):
    """Raised when a request or contract transition is not allowed."""
    pass


class OwnershipError(AccordError):
    """Raised on a write to a contract or registry entry the caller does not own."""
    pass


class ConflictError(AccordError):
    """
    Concurrent edit of the same record, surfaced for manual resolution.

    `paths` lists the conflicted files exactly as the VCS reported them.
    """

    def __init__(self, message: str, paths: list[str] | None = None):
        self.paths = list(paths or [])
        if self.paths:
            message = f"{message}: {', '.join(self.paths)}"
        super().__init__(message)


class SyncError(AccordError):
    """Raised when publishing to the hub failed after bounded retry."""
    pass


class WorkerTimeout(AccordError):
    """The external worker exceeded its wall-clock budget and was killed."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"timeout ({timeout:g}s)")


class WorkerFailure(AccordError):
    """The external worker exited non-zero (or could not be started)."""

    def __init__(self, exit_code: int, detail: str = ""):
        self.exit_code = exit_code
        self.detail = detail
        message = f"agent failure (exit {exit_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
