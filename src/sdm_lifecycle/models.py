from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class GoalState(str, Enum):
    REQUESTED = "requested"
    PLANNED = "planned"
    IN_PROCESS = "in_process"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


TERMINAL_GOAL_STATES = frozenset({GoalState.SUCCESS, GoalState.FAILURE, GoalState.SKIPPED})

GOAL_STATE_TRANSITIONS: dict[GoalState, frozenset[GoalState]] = {
    GoalState.REQUESTED: frozenset({GoalState.PLANNED, GoalState.SKIPPED}),
    GoalState.PLANNED: frozenset({GoalState.IN_PROCESS, GoalState.FAILURE, GoalState.SKIPPED}),
    # in_process -> skipped only happens through cancellation.
    GoalState.IN_PROCESS: frozenset({GoalState.SUCCESS, GoalState.FAILURE, GoalState.SKIPPED}),
    GoalState.SUCCESS: frozenset(),
    GoalState.FAILURE: frozenset(),
    GoalState.SKIPPED: frozenset(),
}


class FailureReason(str, Enum):
    PRECONDITION_TIMEOUT = "precondition_timeout"
    PRECONDITION_CHECK_ERROR = "precondition_check_error"
    EXECUTOR_FAILURE = "executor_failure"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


class LifecycleEventKind(str, Enum):
    PUSH = "push"
    GOAL_SET_FETCHED = "goal_set_fetched"
    TIMER_TICK = "timer_tick"
    EXECUTOR_COMPLETED = "executor_completed"
    CANCEL = "cancel"


RE_EVALUATION_KINDS = frozenset(
    {LifecycleEventKind.PUSH, LifecycleEventKind.GOAL_SET_FETCHED, LifecycleEventKind.TIMER_TICK}
)


class IllegalTransitionError(ValueError):
    """Raised when a goal is asked to move along an edge the state machine does not allow."""


def utc_now() -> datetime:
    return datetime.now(UTC)


class GoalDescriptions(BaseModel):
    """Human text shown for a goal in each visible state."""

    planned: str | None = None
    in_process: str | None = None
    completed: str | None = None
    failed: str | None = None
    skipped: str | None = None

    def for_state(self, state: GoalState, display_name: str) -> str:
        if state in (GoalState.REQUESTED, GoalState.PLANNED):
            return self.planned or f"Planned: {display_name}"
        if state == GoalState.IN_PROCESS:
            return self.in_process or f"Working: {display_name}"
        if state == GoalState.SUCCESS:
            return self.completed or f"Complete: {display_name}"
        if state == GoalState.FAILURE:
            return self.failed or f"Failed: {display_name}"
        return self.skipped or f"Skipped: {display_name}"


class PreconditionPolicy(BaseModel):
    """Retry budget of a goal precondition."""

    retries: int = Field(ge=0)
    timeout_seconds: int = Field(gt=0)

    @property
    def max_checks(self) -> int:
        return self.retries + 1

    @property
    def wall_clock_budget_seconds(self) -> int:
        return self.timeout_seconds * (self.retries + 1)


class ExternalUrl(BaseModel):
    label: str | None = None
    url: str


class ExecutionResult(BaseModel):
    """Terminal result reported by a goal executor. ``code == 0`` means success."""

    code: int
    description: str | None = None
    phase: str | None = None
    external_urls: list[ExternalUrl] = Field(default_factory=list)
    data: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.code == 0


class ExecutionAttempt(BaseModel):
    """Per-goal record of one lifecycle run: precondition polling plus execution."""

    attempt_id: str = Field(default_factory=lambda: f"ATT-{uuid.uuid4().hex[:12]}")
    started_at: datetime
    finished_at: datetime | None = None
    checks: int = 0
    last_checked_at: datetime | None = None
    next_check_at: datetime | None = None
    last_check_result: bool | None = None
    executor_invoked: bool = False
    result: ExecutionResult | None = None
    error_type: str | None = None
    error_message: str | None = None

    @property
    def retries_used(self) -> int:
        return max(0, self.checks - 1)

    @property
    def awaiting_completion(self) -> bool:
        return self.executor_invoked and self.result is None and self.finished_at is None


class PushInfo(BaseModel):
    """The push whose goal set this lifecycle belongs to."""

    owner: str
    repo: str
    branch: str = "main"
    sha: str = ""
    workspace_id: str
    provider_id: str = "github"

    @field_validator("owner", "repo", "workspace_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()


class GoalRecord(BaseModel):
    unique_name: str
    display_name: str
    descriptions: GoalDescriptions = Field(default_factory=GoalDescriptions)
    environment: str | None = None
    state: GoalState = GoalState.REQUESTED
    description: str = ""
    phase: str | None = None
    precondition: PreconditionPolicy | None = None
    dependencies: list[str] = Field(default_factory=list)
    declaration_order: int = 0
    external_urls: list[ExternalUrl] = Field(default_factory=list)
    data: dict[str, Any] | None = None
    reason: FailureReason | None = None
    attempt: ExecutionAttempt | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_GOAL_STATES

    def transition(self, new_state: GoalState, *, description: str | None = None) -> None:
        allowed = GOAL_STATE_TRANSITIONS[self.state]
        if new_state not in allowed:
            raise IllegalTransitionError(
                f"Illegal goal state transition for '{self.unique_name}': "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.description = description or self.descriptions.for_state(new_state, self.display_name)
        if new_state in TERMINAL_GOAL_STATES:
            self.phase = None


class LifecycleSnapshot(BaseModel):
    """Goal DAG of one push plus all per-goal attempt state."""

    lifecycle_id: str = Field(default_factory=lambda: f"LC-{uuid.uuid4().hex[:12]}")
    name: str
    push: PushInfo | None = None
    goals: dict[str, GoalRecord]
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    cancelled: bool = False
    cancel_reason: str | None = None
    archived: bool = False
    processed_event_ids: list[str] = Field(default_factory=list)

    def ordered_goals(self) -> list[GoalRecord]:
        return sorted(self.goals.values(), key=lambda goal: goal.declaration_order)

    def dependents_of(self, unique_name: str) -> list[str]:
        return [
            goal.unique_name
            for goal in self.ordered_goals()
            if unique_name in goal.dependencies
        ]

    @property
    def is_complete(self) -> bool:
        return all(goal.is_terminal for goal in self.goals.values())

    @property
    def outcome(self) -> GoalState | None:
        """Aggregate state once every goal is terminal, ``None`` while work remains."""
        if not self.is_complete:
            return None
        if any(goal.state == GoalState.FAILURE for goal in self.goals.values()):
            return GoalState.FAILURE
        if self.cancelled or any(goal.state == GoalState.SKIPPED for goal in self.goals.values()):
            return GoalState.SKIPPED
        return GoalState.SUCCESS


class LifecycleEvent(BaseModel):
    """External trigger that causes a lifecycle to be re-evaluated."""

    event_id: str = Field(default_factory=lambda: f"EV-{uuid.uuid4().hex[:12]}")
    kind: LifecycleEventKind
    occurred_at: datetime = Field(default_factory=utc_now)
    goal: str | None = None
    attempt_id: str | None = None
    result: ExecutionResult | None = None
    reason: str | None = None

    @classmethod
    def trigger(cls, kind: LifecycleEventKind, occurred_at: datetime | None = None) -> LifecycleEvent:
        """Re-evaluation event from a push, a goal-set fetch or a timer."""
        if kind not in RE_EVALUATION_KINDS:
            raise ValueError(f"{kind.value} is not a re-evaluation event")
        return cls(kind=kind, occurred_at=occurred_at or utc_now())

    @classmethod
    def tick(cls, occurred_at: datetime | None = None) -> LifecycleEvent:
        return cls.trigger(LifecycleEventKind.TIMER_TICK, occurred_at)

    @classmethod
    def completion(
        cls,
        goal: str,
        attempt_id: str,
        result: ExecutionResult,
        occurred_at: datetime | None = None,
    ) -> LifecycleEvent:
        return cls(
            kind=LifecycleEventKind.EXECUTOR_COMPLETED,
            goal=goal,
            attempt_id=attempt_id,
            result=result,
            occurred_at=occurred_at or utc_now(),
        )
