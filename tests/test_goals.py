from __future__ import annotations

import pytest

from sdm_lifecycle.goals import GoalDefinition, GoalPlan, PlanValidationError, Precondition
from sdm_lifecycle.models import (
    ExecutionResult,
    GoalDescriptions,
    GoalRecord,
    GoalState,
    IllegalTransitionError,
)
from sdm_lifecycle.utils import validate_goal_dag


def _noop(ctx: object) -> ExecutionResult:
    return ExecutionResult(code=0)


def _goal(name: str, **kwargs: object) -> GoalDefinition:
    return GoalDefinition(unique_name=name, **kwargs).with_executor(f"{name}-executor", _noop)  # type: ignore[arg-type]


def test_goal_plan_builder_records_after_edges() -> None:
    deploy, verify, stop = _goal("deploy"), _goal("verify"), _goal("stop")

    plan = GoalPlan("test deploy").plan(deploy).plan(verify).after(deploy).plan(stop).after(verify)

    assert plan.validate() == ["deploy", "verify", "stop"]
    assert plan.dependencies("verify") == ["deploy"]
    assert plan.dependencies("stop") == ["verify"]
    assert "stop" in plan
    assert len(plan) == 3


def test_goal_plan_from_edges_matches_builder() -> None:
    plan = GoalPlan.from_edges(
        "release",
        [_goal("build"), _goal("test"), _goal("publish")],
        {"test": ["build"], "publish": ["build", "test"]},
    )

    assert plan.dependencies("publish") == ["build", "test"]
    assert [goal.unique_name for goal in plan] == ["build", "test", "publish"]


def test_goal_plan_rejects_duplicate_names() -> None:
    with pytest.raises(PlanValidationError, match="Duplicate"):
        GoalPlan("dup").plan(_goal("a")).plan(_goal("a"))


def test_goal_plan_rejects_cycles() -> None:
    with pytest.raises(PlanValidationError, match="cycle"):
        GoalPlan.from_edges("cyclic", [_goal("a"), _goal("b")], {"a": ["b"], "b": ["a"]})


def test_goal_plan_rejects_unknown_dependency() -> None:
    plan = GoalPlan("unknown").plan(_goal("a")).after("ghost")

    with pytest.raises(PlanValidationError, match="ghost"):
        plan.validate()


def test_from_edges_rejects_edges_for_unplanned_goals() -> None:
    with pytest.raises(PlanValidationError, match="not planned: bb"):
        GoalPlan.from_edges("typo", [_goal("a"), _goal("b")], {"bb": ["a"]})

    plan = GoalPlan.from_edges("ok", [_goal("a"), _goal("b")], {"b": ["a"]})
    assert plan.dependencies("b") == ["a"]


def test_goal_plan_rejects_goal_without_executor() -> None:
    plan = GoalPlan("bare").plan(GoalDefinition(unique_name="lonely"))

    with pytest.raises(PlanValidationError, match="no executor"):
        plan.validate()


def test_goal_plan_rejects_self_dependency_and_dangling_after() -> None:
    goal = _goal("a")
    with pytest.raises(PlanValidationError):
        GoalPlan("self").plan(goal).after(goal)
    with pytest.raises(PlanValidationError):
        GoalPlan("dangling").after("a")


def test_records_start_requested_in_declaration_order() -> None:
    plan = GoalPlan("p").plan(_goal("first")).plan(
        _goal("second", descriptions=GoalDescriptions(planned="Queued second"), data={"k": 1})
    ).after("first")

    records = plan.records()

    assert [record.declaration_order for record in records.values()] == [0, 1]
    assert all(record.state == GoalState.REQUESTED for record in records.values())
    assert records["first"].description == "Planned: first"
    assert records["second"].description == "Queued second"
    assert records["second"].dependencies == ["first"]
    assert records["second"].data == {"k": 1}


def test_precondition_validates_budget() -> None:
    with pytest.raises(ValueError):
        Precondition(retries=-1, timeout_seconds=10, check=lambda ctx: True)
    with pytest.raises(ValueError):
        Precondition(retries=1, timeout_seconds=0, check=lambda ctx: True)

    policy = Precondition(retries=20, timeout_seconds=60, check=lambda ctx: True).policy
    assert policy.max_checks == 21
    assert policy.wall_clock_budget_seconds == 1260


def test_goal_record_never_moves_backward() -> None:
    record = GoalRecord(unique_name="g", display_name="g")
    record.transition(GoalState.PLANNED)
    record.transition(GoalState.IN_PROCESS)
    record.transition(GoalState.SUCCESS, description="done")

    assert record.description == "done"
    with pytest.raises(IllegalTransitionError):
        record.transition(GoalState.IN_PROCESS)


def test_goal_record_cannot_skip_straight_to_success() -> None:
    record = GoalRecord(unique_name="g", display_name="g")

    with pytest.raises(IllegalTransitionError, match="requested -> success"):
        record.transition(GoalState.SUCCESS)


def test_validate_goal_dag_is_stable_in_declaration_order() -> None:
    order = validate_goal_dag({"a": [], "c": ["a"], "b": ["a"], "d": ["b", "c"]})

    assert order == ["a", "c", "b", "d"]
