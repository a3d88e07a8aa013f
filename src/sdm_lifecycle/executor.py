from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Protocol

from pydantic import ValidationError

from .models import ExecutionAttempt, ExecutionResult, GoalRecord, PushInfo
from .targets import TargetAbsentError

logger = logging.getLogger(__name__)


class ProgressLog(Protocol):
    """Fire-and-forget sink for human-readable goal progress lines."""

    def write(self, line: str) -> None:
        ...


class LoggingProgressLog:
    """Progress sink that forwards every line to a standard logger."""

    def __init__(self, name: str = "sdm_lifecycle.progress") -> None:
        self._logger = logging.getLogger(name)

    def write(self, line: str) -> None:
        self._logger.info(line)


class BufferedProgressLog:
    """Progress sink that keeps lines in memory, e.g. for the CLI or tests."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def write(self, line: str) -> None:
        self.lines.append(line)


def safe_write(progress_log: ProgressLog, line: str) -> None:
    """Write to a progress sink without letting a sink failure affect the goal."""
    try:
        progress_log.write(line)
    except Exception:  # noqa: BLE001 - a broken sink must never block goal progression
        logger.warning("Progress log write failed for line %r", line, exc_info=True)


@dataclass(frozen=True)
class GoalContext:
    """Read-only view handed to preconditions and executors.

    ``goal``, ``attempt`` and ``goal_set`` are copies; changing them has no
    effect on the lifecycle.  Executors report back through their return
    value only.
    """

    lifecycle_id: str
    goal: GoalRecord
    attempt: ExecutionAttempt
    now: datetime
    progress_log: ProgressLog
    push: PushInfo | None = None
    goal_set: Mapping[str, GoalRecord] = field(default_factory=dict)

    def goal_data(self, unique_name: str) -> dict[str, Any] | None:
        record = self.goal_set.get(unique_name)
        return record.data if record is not None else None


class GoalExecutor(Protocol):
    """Action run once a goal is eligible.

    Returning ``None`` means the work continues detached and its result will
    arrive later as an ``executor_completed`` event.
    """

    def __call__(self, ctx: GoalContext) -> ExecutionResult | None:
        ...


def invoke_executor(executor: GoalExecutor, ctx: GoalContext) -> ExecutionResult | None:
    """Run ``executor`` and normalize its outcome.

    A raised error becomes a failing result (code 1), identical to a non-zero
    code except that the full traceback is logged.
    """
    try:
        raw = executor(ctx)
    except Exception as exc:  # noqa: BLE001 - executor failures are recorded on the goal
        logger.exception(
            "Executor for goal '%s' in lifecycle %s raised",
            ctx.goal.unique_name,
            ctx.lifecycle_id,
        )
        safe_write(ctx.progress_log, f"{ctx.goal.display_name} failed: {exc}")
        return ExecutionResult(code=1, description=f"{ctx.goal.display_name} failed: {type(exc).__name__}: {exc}")

    if raw is None or isinstance(raw, ExecutionResult):
        return raw
    try:
        return ExecutionResult.model_validate(raw)
    except ValidationError as exc:
        logger.error("Executor for goal '%s' returned an invalid result: %s", ctx.goal.unique_name, exc)
        return ExecutionResult(code=1, description=f"{ctx.goal.display_name} returned an invalid result")


def tolerate_absent(
    action: Callable[[], object],
    *,
    target: str,
    progress_log: ProgressLog | None = None,
) -> bool:
    """Run a destructive ``action`` treating a missing target as already done.

    Returns:
        ``True`` when the action removed something, ``False`` when the target
        was already absent.

    Raises:
        Exception: Any error other than ``TargetAbsentError`` propagates.
    """
    try:
        action()
    except TargetAbsentError:
        logger.info("%s already absent; nothing to remove", target)
        if progress_log is not None:
            safe_write(progress_log, f"{target} already absent")
        return False
    return True
