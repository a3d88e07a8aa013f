"""Precondition polling for goals.

Two entry points share the same outcome model:

* :func:`poll` runs a complete polling session, waiting between attempts
  through an injected ``sleep`` callable.  Useful for standalone scripts.
* :func:`poll_step` performs at most one check against persisted attempt
  state and returns immediately.  The lifecycle controller calls it once per
  ``advance`` so no blocking wait ever happens inside the controller.

Neither function mutates its inputs.  Callers apply the returned outcome to
their own records.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from .models import ExecutionAttempt, PreconditionPolicy

logger = logging.getLogger(__name__)

Check = Callable[[], bool]


class PollStatus(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    DEFERRED = "deferred"
    TIMED_OUT = "timed_out"
    CHECK_FAILED = "check_failed"


@dataclass(frozen=True)
class PollOutcome:
    """Result of one polling step or of a whole polling session.

    ``checks`` is the total number of check invocations including this step.
    ``checked`` tells whether this step invoked the check at all.
    """

    status: PollStatus
    checks: int
    checked: bool
    next_check_at: datetime | None = None
    error: BaseException | None = None
    detail: str = ""

    @property
    def ready(self) -> bool:
        return self.status == PollStatus.READY

    @property
    def terminal(self) -> bool:
        return self.status in (PollStatus.READY, PollStatus.TIMED_OUT, PollStatus.CHECK_FAILED)


@dataclass(frozen=True)
class ProgressUpdate:
    """Goal text a precondition wants shown while it is not yet satisfied."""

    description: str | None = None
    phase: str | None = None


def _invoke(check: Check) -> tuple[bool | None, BaseException | None]:
    try:
        return bool(check()), None
    except Exception as exc:  # noqa: BLE001 - surfaced to the caller as CHECK_FAILED
        return None, exc


def poll(
    check: Check,
    retries: int,
    timeout_seconds: int,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome:
    """Invoke ``check`` up to ``retries + 1`` times, waiting ``timeout_seconds`` between attempts.

    Args:
        check: Zero-argument callable returning readiness.
        retries: Number of additional attempts after the first one.
        timeout_seconds: Wait between consecutive attempts.
        sleep: Wait implementation; tests and schedulers inject their own.

    Returns:
        ``READY`` on the first true result, ``CHECK_FAILED`` as soon as the
        check raises, ``TIMED_OUT`` once every attempt returned false.

    Raises:
        ValueError: If the retry budget is invalid.
    """
    policy = PreconditionPolicy(retries=retries, timeout_seconds=timeout_seconds)
    for index in range(policy.max_checks):
        checks = index + 1
        ready, error = _invoke(check)
        if error is not None:
            logger.warning("Precondition check raised on attempt %d: %s", checks, error)
            return PollOutcome(PollStatus.CHECK_FAILED, checks, True, error=error, detail=str(error))
        if ready:
            return PollOutcome(PollStatus.READY, checks, True)
        logger.debug("Precondition not ready after attempt %d/%d", checks, policy.max_checks)
        if checks < policy.max_checks:
            sleep(policy.timeout_seconds)
    return PollOutcome(
        PollStatus.TIMED_OUT,
        policy.max_checks,
        True,
        detail=f"not ready after {policy.max_checks} checks",
    )


def poll_step(
    check: Check,
    policy: PreconditionPolicy,
    attempt: ExecutionAttempt,
    now: datetime,
) -> PollOutcome:
    """Perform at most one precondition check for ``attempt`` at time ``now``.

    Two budgets bound the polling, whichever is reached first: the number of
    checks (``retries + 1``) and the wall time since the attempt started
    (``timeout_seconds * (retries + 1)``).  A check is only invoked once the
    attempt's ``next_check_at`` is due; earlier calls return ``DEFERRED``.
    """
    elapsed = (now - attempt.started_at).total_seconds()
    if attempt.checks >= policy.max_checks:
        return PollOutcome(
            PollStatus.TIMED_OUT,
            attempt.checks,
            False,
            detail=f"not ready after {attempt.checks} checks",
        )
    if elapsed >= policy.wall_clock_budget_seconds:
        return PollOutcome(
            PollStatus.TIMED_OUT,
            attempt.checks,
            False,
            detail=f"not ready within {policy.wall_clock_budget_seconds}s",
        )
    if attempt.next_check_at is not None and now < attempt.next_check_at:
        return PollOutcome(PollStatus.DEFERRED, attempt.checks, False, next_check_at=attempt.next_check_at)

    checks = attempt.checks + 1
    ready, error = _invoke(check)
    if error is not None:
        return PollOutcome(
            PollStatus.CHECK_FAILED,
            checks,
            True,
            error=error,
            detail=f"{type(error).__name__}: {error}",
        )
    if ready:
        return PollOutcome(PollStatus.READY, checks, True)
    if checks >= policy.max_checks:
        return PollOutcome(
            PollStatus.TIMED_OUT,
            checks,
            True,
            detail=f"not ready after {checks} checks",
        )
    return PollOutcome(
        PollStatus.WAITING,
        checks,
        True,
        next_check_at=now + timedelta(seconds=policy.timeout_seconds),
    )
