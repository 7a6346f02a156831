"""
Accord — Bounded Retry

Wraps idempotent VCS operations (fetch, publish) with:
  - A fixed attempt bound (3 by default, like the publish loop it replaces)
  - Exponential backoff with jitter between attempts
  - A conflict predicate deciding which errors are retried at all
  - A recovery step run between attempts (e.g. rebase onto the new remote)
  - Structured logging of every attempt

Errors the predicate does not accept propagate immediately, and so does
anything raised by the recovery step (a same-record ConflictError is
surfaced, never retried). Exhausting the bound raises SyncError.

Usage:
    from accord.retry import RetryPolicy, retry_operation

    result = retry_operation(
        vcs.push,
        is_retryable=lambda e: isinstance(e, PushRejected),
        recover=lambda e: vcs.rebase(),
        policy=RetryPolicy(max_attempts=3),
        name="push",
    )
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from accord.errors import SyncError

logger = logging.getLogger("accord.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for bounded retry."""
    max_attempts: int = 3
    backoff_base: float = 1.0       # seconds; actual delay = base * 2^attempt + jitter
    backoff_max: float = 30.0       # cap on delay between retries
    jitter: float = 0.2             # ±20% randomization on backoff


DEFAULT_POLICY = RetryPolicy()


@dataclass
class RetryResult:
    """Result of an operation run under retry."""
    value: Any
    attempts: int                   # 1 = first try succeeded
    total_latency: float
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


def _calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def retry_operation(
    operation: Callable[[], Any],
    is_retryable: Callable[[Exception], bool],
    recover: Callable[[Exception], None] | None = None,
    policy: RetryPolicy | None = None,
    name: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Run `operation` until it succeeds or the attempt bound is reached.

    Args:
        operation:     Idempotent zero-argument callable
        is_retryable:  Predicate over the raised exception; False re-raises
        recover:       Called with the error before the next attempt
        policy:        RetryPolicy (or default)
        name:          For logging
        sleep_fn:      Sleep function (injectable for testing)

    Raises:
        SyncError: when every attempt failed with a retryable error
    """
    if policy is None:
        policy = DEFAULT_POLICY

    attempt_log: list[dict[str, Any]] = []
    last_error: Exception | None = None
    total_t0 = time.time()

    for attempt in range(policy.max_attempts):
        entry: dict[str, Any] = {"attempt": attempt + 1, "operation": name}
        t0 = time.time()
        try:
            value = operation()
        except Exception as e:
            entry["latency_s"] = round(time.time() - t0, 2)
            entry["error"] = str(e)[:200]
            last_error = e

            if not is_retryable(e):
                entry["status"] = "non_retryable"
                attempt_log.append(entry)
                raise

            entry["status"] = "retryable_error"
            attempt_log.append(entry)
            logger.warning(
                "%s failed (attempt %d/%d): %s",
                name or "operation", attempt + 1, policy.max_attempts, str(e)[:100],
            )

            if attempt < policy.max_attempts - 1:
                if recover is not None:
                    recover(e)
                delay = _calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 2)
                sleep_fn(delay)
            continue

        entry["latency_s"] = round(time.time() - t0, 2)
        entry["status"] = "success"
        attempt_log.append(entry)
        if attempt:
            logger.info("%s succeeded after %d attempts", name or "operation", attempt + 1)
        return RetryResult(
            value=value,
            attempts=attempt + 1,
            total_latency=time.time() - total_t0,
            attempt_log=attempt_log,
        )

    logger.error(
        "%s: all %d attempts exhausted", name or "operation", policy.max_attempts,
    )
    raise SyncError(
        f"{name or 'operation'} failed after {policy.max_attempts} attempts; "
        f"manual resolution required: {last_error}"
    ) from last_error
