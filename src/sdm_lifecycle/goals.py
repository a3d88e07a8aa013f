from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Sequence

from .models import GoalDescriptions, GoalRecord, PreconditionPolicy
from .poller import PollOutcome, ProgressUpdate
from .utils import validate_goal_dag

if TYPE_CHECKING:
    from .executor import GoalContext, GoalExecutor

Condition = Callable[["GoalContext"], bool]
WaitingHook = Callable[["GoalContext", PollOutcome], "ProgressUpdate | None"]


class PlanValidationError(ValueError):
    """Raised when a goal plan is not a valid DAG of executable goals."""


@dataclass(frozen=True)
class Precondition:
    """Polled gate that must pass before a goal's executor runs."""

    retries: int
    timeout_seconds: int
    check: Condition
    on_waiting: WaitingHook | None = None

    def __post_init__(self) -> None:
        # Fails fast on negative retries or a non-positive timeout.
        PreconditionPolicy(retries=self.retries, timeout_seconds=self.timeout_seconds)

    @property
    def policy(self) -> PreconditionPolicy:
        return PreconditionPolicy(retries=self.retries, timeout_seconds=self.timeout_seconds)


@dataclass
class GoalDefinition:
    """Declarative goal: identity, texts, optional precondition and executor."""

    unique_name: str
    display_name: str = ""
    descriptions: GoalDescriptions = field(default_factory=GoalDescriptions)
    environment: str | None = None
    precondition: Precondition | None = None
    executor: GoalExecutor | None = None
    executor_name: str | None = None
    data: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.unique_name.strip():
            raise PlanValidationError("unique_name must be non-empty")
        if not self.display_name:
            self.display_name = self.unique_name

    def with_executor(self, name: str, executor: GoalExecutor) -> GoalDefinition:
        self.executor_name = name
        self.executor = executor
        return self

    def to_record(self, *, declaration_order: int, dependencies: Sequence[str]) -> GoalRecord:
        record = GoalRecord(
            unique_name=self.unique_name,
            display_name=self.display_name,
            descriptions=self.descriptions.model_copy(),
            environment=self.environment,
            precondition=self.precondition.policy if self.precondition is not None else None,
            dependencies=list(dependencies),
            declaration_order=declaration_order,
            data=dict(self.data) if self.data is not None else None,
        )
        record.description = record.descriptions.for_state(record.state, record.display_name)
        return record


GoalRef = GoalDefinition | str


def _name_of(goal: GoalRef) -> str:
    return goal if isinstance(goal, str) else goal.unique_name


class GoalPlan:
    """Named, ordered set of goals and their ``after`` edges.

    Builder usage::

        GoalPlan("test deploy").plan(deploy).plan(verify).after(deploy).plan(stop).after(verify)
    """

    def __init__(self, name: str) -> None:
        if not name.strip():
            raise PlanValidationError("goal plan name must be non-empty")
        self.name = name
        self._goals: dict[str, GoalDefinition] = {}
        self._dependencies: dict[str, list[str]] = {}
        self._last_planned: list[str] = []

    @classmethod
    def from_edges(
        cls,
        name: str,
        goals: Sequence[GoalDefinition],
        edges: Mapping[str, Sequence[GoalRef]] | None = None,
    ) -> GoalPlan:
        """Build a plan from goals in declaration order and a ``goal -> predecessors`` mapping."""
        edges = edges or {}
        unknown = sorted(set(edges) - {goal.unique_name for goal in goals})
        if unknown:
            raise PlanValidationError(f"Edges name goals that are not planned: {', '.join(unknown)}")
        plan = cls(name)
        for goal in goals:
            plan.plan(goal)
            predecessors = edges.get(goal.unique_name, ())
            if predecessors:
                plan.after(*predecessors)
        plan.validate()
        return plan

    def plan(self, *goals: GoalDefinition) -> GoalPlan:
        for goal in goals:
            if goal.unique_name in self._goals:
                raise PlanValidationError(f"Duplicate goal unique_name: {goal.unique_name}")
            self._goals[goal.unique_name] = goal
            self._dependencies[goal.unique_name] = []
        self._last_planned = [goal.unique_name for goal in goals]
        return self

    def after(self, *goals: GoalRef) -> GoalPlan:
        if not self._last_planned:
            raise PlanValidationError("after() must follow plan()")
        for name in self._last_planned:
            for predecessor in goals:
                dep = _name_of(predecessor)
                if dep == name:
                    raise PlanValidationError(f"Goal '{name}' cannot depend on itself")
                if dep not in self._dependencies[name]:
                    self._dependencies[name].append(dep)
        return self

    @property
    def goals(self) -> list[GoalDefinition]:
        return list(self._goals.values())

    def definition(self, unique_name: str) -> GoalDefinition:
        try:
            return self._goals[unique_name]
        except KeyError:
            raise PlanValidationError(f"Goal plan '{self.name}' has no goal '{unique_name}'") from None

    def dependencies(self, unique_name: str) -> list[str]:
        return list(self._dependencies[unique_name])

    def validate(self) -> list[str]:
        """Check the plan and return its goals in topological (declaration-stable) order."""
        if not self._goals:
            raise PlanValidationError(f"Goal plan '{self.name}' has no goals")
        for goal in self._goals.values():
            if goal.executor is None:
                raise PlanValidationError(f"Goal '{goal.unique_name}' has no executor")
        try:
            return validate_goal_dag(self._dependencies)
        except ValueError as exc:
            raise PlanValidationError(str(exc)) from exc

    def records(self) -> dict[str, GoalRecord]:
        return {
            goal.unique_name: goal.to_record(
                declaration_order=idx,
                dependencies=self._dependencies[goal.unique_name],
            )
            for idx, goal in enumerate(self._goals.values())
        }

    def __contains__(self, unique_name: object) -> bool:
        return unique_name in self._goals

    def __iter__(self) -> Iterator[GoalDefinition]:
        return iter(self._goals.values())

    def __len__(self) -> int:
        return len(self._goals)
