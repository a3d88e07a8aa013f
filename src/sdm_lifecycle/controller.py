from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .executor import GoalContext, LoggingProgressLog, ProgressLog, invoke_executor, safe_write
from .goals import GoalDefinition, GoalPlan, PlanValidationError
from .models import (
    ExecutionAttempt,
    ExecutionResult,
    FailureReason,
    GoalRecord,
    GoalState,
    LifecycleEvent,
    LifecycleEventKind,
    LifecycleSnapshot,
    PushInfo,
    utc_now,
)
from .poller import PollOutcome, PollStatus, ProgressUpdate, poll_step
from .settings import RuntimeSettings
from .utils import format_duration

logger = logging.getLogger(__name__)

_EVENT_HISTORY_LIMIT = 256


class AdvanceState(TypedDict, total=False):
    snapshot: LifecycleSnapshot
    now: datetime
    polled: list[str]
    invoked: list[str]
    changed: bool
    dirty: bool


class LifecycleController:
    """Drives one goal plan's lifecycles forward, one external event at a time.

    Each ``advance`` runs a LangGraph cycle ``admit -> promote -> propagate``
    until a pass changes nothing, then ``finalize``.  Within one call every
    precondition is checked at most once and every executor is invoked at most
    once per attempt; nothing blocks or sleeps.
    """

    def __init__(
        self,
        goal_plan: GoalPlan,
        *,
        settings: RuntimeSettings | None = None,
        progress_log: ProgressLog | None = None,
    ) -> None:
        self.goal_plan = goal_plan
        self.goal_order = goal_plan.validate()
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.progress_log = progress_log if progress_log is not None else LoggingProgressLog()
        # Each admit -> promote -> propagate pass settles at least one more DAG level.
        self.recursion_limit = max(self.settings.recursion_limit, 3 * (len(self.goal_order) + 2) + 1)
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(AdvanceState)
        graph.add_node("admit", self._admit_node)
        graph.add_node("promote", self._promote_node)
        graph.add_node("propagate", self._propagate_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "admit")
        graph.add_edge("admit", "promote")
        graph.add_edge("promote", "propagate")
        graph.add_conditional_edges(
            "propagate",
            self._propagate_route,
            {
                "admit": "admit",
                "finalize": "finalize",
            },
        )
        graph.add_edge("finalize", END)
        return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(
        self,
        *,
        push: PushInfo | None = None,
        lifecycle_id: str | None = None,
        now: datetime | None = None,
    ) -> LifecycleSnapshot:
        """Create a fresh lifecycle with every goal ``requested``."""
        created = now or utc_now()
        fields: dict[str, Any] = {
            "name": self.goal_plan.name,
            "push": push,
            "goals": self.goal_plan.records(),
            "created_at": created,
            "updated_at": created,
        }
        if lifecycle_id is not None:
            fields["lifecycle_id"] = lifecycle_id
        snapshot = LifecycleSnapshot(**fields)
        logger.info("Planned lifecycle %s '%s' with %d goals", snapshot.lifecycle_id, snapshot.name, len(snapshot.goals))
        return snapshot

    def advance(self, snapshot: LifecycleSnapshot, event: LifecycleEvent) -> LifecycleSnapshot:
        """Return the lifecycle after reacting to ``event``.

        Goal-level failures are recorded on the goals; they never raise.

        Raises:
            PlanValidationError: If ``snapshot`` was not planned from this controller's goal plan.
        """
        self._check_plan(snapshot)
        working = snapshot.model_copy(deep=True)
        if event.event_id in working.processed_event_ids:
            logger.debug("Event %s already applied to lifecycle %s", event.event_id, working.lifecycle_id)
            return working
        if working.archived:
            logger.warning("Ignoring %s event for archived lifecycle %s", event.kind.value, working.lifecycle_id)
            return working

        now = event.occurred_at
        if event.kind == LifecycleEventKind.CANCEL:
            self._cancel_in_place(working, event.reason, now)
            self._remember_event(working, event.event_id)
            return working
        if working.cancelled:
            logger.debug("Lifecycle %s is cancelled; ignoring %s event", working.lifecycle_id, event.kind.value)
            self._remember_event(working, event.event_id)
            return working

        dirty = False
        if event.kind == LifecycleEventKind.EXECUTOR_COMPLETED:
            dirty = self._record_completion(working, event, now)

        result = self.graph.invoke(
            {
                "snapshot": working,
                "now": now,
                "polled": [],
                "invoked": [],
                "changed": False,
                "dirty": dirty,
            },
            config={"recursion_limit": self.recursion_limit},
        )
        advanced: LifecycleSnapshot = result["snapshot"]
        self._remember_event(advanced, event.event_id)
        return advanced

    def cancel(
        self,
        snapshot: LifecycleSnapshot,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> LifecycleSnapshot:
        """Skip every non-terminal goal; later executor completions are ignored."""
        event = LifecycleEvent(kind=LifecycleEventKind.CANCEL, reason=reason, occurred_at=now or utc_now())
        return self.advance(snapshot, event)

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _admit_node(self, state: AdvanceState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        admitted = False
        for goal in snapshot.ordered_goals():
            if goal.state != GoalState.REQUESTED:
                continue
            if all(snapshot.goals[dep].state == GoalState.SUCCESS for dep in goal.dependencies):
                self._transition(snapshot, goal, GoalState.PLANNED)
                admitted = True
        return {"snapshot": snapshot, "changed": admitted, "dirty": state.get("dirty", False) or admitted}

    def _promote_node(self, state: AdvanceState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        now = state["now"]
        polled = list(state.get("polled", []))
        invoked = list(state.get("invoked", []))
        changed = False

        for goal in snapshot.ordered_goals():
            definition = self.goal_plan.definition(goal.unique_name)
            if goal.state == GoalState.PLANNED:
                goal.attempt = ExecutionAttempt(started_at=now)
                changed = True
                if definition.precondition is None:
                    self._transition(snapshot, goal, GoalState.IN_PROCESS)
                    self._execute(snapshot, goal, definition, now, invoked)
                    continue
            if goal.state not in (GoalState.PLANNED, GoalState.IN_PROCESS):
                continue
            attempt = goal.attempt
            if attempt is None or attempt.executor_invoked:
                continue
            if goal.unique_name in polled:
                continue
            polled.append(goal.unique_name)
            changed = self._poll_precondition(snapshot, goal, definition, now, invoked) or changed

        return {
            "snapshot": snapshot,
            "polled": polled,
            "invoked": invoked,
            "changed": state.get("changed", False) or changed,
            "dirty": state.get("dirty", False) or changed,
        }

    def _propagate_node(self, state: AdvanceState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        skipped = False
        for goal in snapshot.ordered_goals():
            if goal.state == GoalState.FAILURE:
                skipped = self._skip_downstream(snapshot, goal) or skipped
        return {
            "snapshot": snapshot,
            "changed": state.get("changed", False) or skipped,
            "dirty": state.get("dirty", False) or skipped,
        }

    def _propagate_route(self, state: AdvanceState) -> str:
        if state.get("changed"):
            return "admit"
        return "finalize"

    def _finalize_node(self, state: AdvanceState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        if state.get("dirty"):
            snapshot.updated_at = state["now"]
        if snapshot.is_complete:
            logger.info(
                "Lifecycle %s '%s' finished: %s",
                snapshot.lifecycle_id,
                snapshot.name,
                snapshot.outcome.value if snapshot.outcome else "unknown",
            )
        return {"snapshot": snapshot}

    # ------------------------------------------------------------------
    # Goal handling
    # ------------------------------------------------------------------

    def _context(self, snapshot: LifecycleSnapshot, goal: GoalRecord, now: datetime) -> GoalContext:
        assert goal.attempt is not None
        return GoalContext(
            lifecycle_id=snapshot.lifecycle_id,
            goal=goal.model_copy(deep=True),
            attempt=goal.attempt.model_copy(deep=True),
            now=now,
            progress_log=self.progress_log,
            push=snapshot.push.model_copy() if snapshot.push is not None else None,
            goal_set={
                name: record.model_copy(deep=True)
                for name, record in snapshot.goals.items()
                if name != goal.unique_name
            },
        )

    def _poll_precondition(
        self,
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        definition: GoalDefinition,
        now: datetime,
        invoked: list[str],
    ) -> bool:
        precondition = definition.precondition
        attempt = goal.attempt
        assert precondition is not None and attempt is not None
        ctx = self._context(snapshot, goal, now)
        outcome = poll_step(lambda: precondition.check(ctx), precondition.policy, attempt, now)

        if outcome.status == PollStatus.DEFERRED:
            return False
        if outcome.checked:
            attempt.checks = outcome.checks
            attempt.last_checked_at = now
            attempt.last_check_result = outcome.ready if outcome.error is None else None

        if outcome.status == PollStatus.READY:
            attempt.next_check_at = None
            if goal.state == GoalState.PLANNED:
                self._transition(snapshot, goal, GoalState.IN_PROCESS)
            else:
                goal.description = goal.descriptions.for_state(GoalState.IN_PROCESS, goal.display_name)
                goal.phase = None
            self._execute(snapshot, goal, definition, now, invoked)
        elif outcome.status == PollStatus.WAITING:
            attempt.next_check_at = outcome.next_check_at
            if goal.state == GoalState.PLANNED:
                self._transition(snapshot, goal, GoalState.IN_PROCESS)
            self._report_waiting(goal, definition, ctx, outcome)
        elif outcome.status == PollStatus.TIMED_OUT:
            self._fail(
                snapshot,
                goal,
                FailureReason.PRECONDITION_TIMEOUT,
                f"{goal.display_name}: precondition timed out ({outcome.detail})",
                now,
            )
        else:
            error = outcome.error
            logger.warning(
                "Precondition check for goal '%s' in lifecycle %s raised",
                goal.unique_name,
                snapshot.lifecycle_id,
                exc_info=error,
            )
            attempt.error_type = type(error).__name__ if error is not None else None
            attempt.error_message = str(error) if error is not None else outcome.detail
            self._fail(
                snapshot,
                goal,
                FailureReason.PRECONDITION_CHECK_ERROR,
                f"{goal.display_name}: precondition check failed ({outcome.detail})",
                now,
            )
        return True

    def _report_waiting(
        self,
        goal: GoalRecord,
        definition: GoalDefinition,
        ctx: GoalContext,
        outcome: PollOutcome,
    ) -> None:
        update: ProgressUpdate | None = None
        hook = definition.precondition.on_waiting if definition.precondition is not None else None
        if hook is not None:
            try:
                update = hook(ctx, outcome)
            except Exception:  # noqa: BLE001 - progress reporting never fails a goal
                logger.warning("Progress hook for goal '%s' raised", goal.unique_name, exc_info=True)
        if update is None:
            retry_in = outcome.next_check_at - ctx.now if outcome.next_check_at is not None else None
            update = ProgressUpdate(
                description=goal.descriptions.for_state(GoalState.IN_PROCESS, goal.display_name),
                phase=f"retrying in {format_duration(retry_in)}" if retry_in is not None else None,
            )
        if update.description:
            goal.description = update.description
        goal.phase = update.phase

    def _execute(
        self,
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        definition: GoalDefinition,
        now: datetime,
        invoked: list[str],
    ) -> None:
        attempt = goal.attempt
        assert attempt is not None and definition.executor is not None
        if attempt.executor_invoked:
            # At most one invocation per attempt.
            return
        attempt.executor_invoked = True
        invoked.append(goal.unique_name)
        logger.info("Executing goal '%s' (%s) in lifecycle %s", goal.unique_name, definition.executor_name, snapshot.lifecycle_id)
        result = invoke_executor(definition.executor, self._context(snapshot, goal, now))
        if result is None:
            logger.info("Goal '%s' running detached; awaiting completion of %s", goal.unique_name, attempt.attempt_id)
            return
        self._apply_result(snapshot, goal, result, now)

    def _apply_result(
        self,
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        result: ExecutionResult,
        now: datetime,
    ) -> None:
        attempt = goal.attempt
        assert attempt is not None
        attempt.result = result
        if result.external_urls:
            goal.external_urls = list(result.external_urls)
        if result.data is not None:
            goal.data = dict(result.data)
        if result.succeeded:
            self._finish(snapshot, goal, GoalState.SUCCESS, result.description, now)
        else:
            goal.reason = FailureReason.EXECUTOR_FAILURE
            safe_write(self.progress_log, f"{goal.display_name} failed with code {result.code}")
            self._finish(snapshot, goal, GoalState.FAILURE, result.description, now)

    def _record_completion(self, snapshot: LifecycleSnapshot, event: LifecycleEvent, now: datetime) -> bool:
        goal = snapshot.goals.get(event.goal or "")
        attempt = goal.attempt if goal is not None else None
        if (
            goal is None
            or attempt is None
            or event.result is None
            or goal.state != GoalState.IN_PROCESS
            or attempt.attempt_id != event.attempt_id
            or not attempt.awaiting_completion
        ):
            logger.debug(
                "Ignoring completion for goal %r attempt %r in lifecycle %s",
                event.goal,
                event.attempt_id,
                snapshot.lifecycle_id,
            )
            return False
        self._apply_result(snapshot, goal, event.result, now)
        return True

    def _fail(
        self,
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        reason: FailureReason,
        description: str,
        now: datetime,
    ) -> None:
        goal.reason = reason
        safe_write(self.progress_log, description)
        self._finish(snapshot, goal, GoalState.FAILURE, description, now)

    def _finish(
        self,
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        new_state: GoalState,
        description: str | None,
        now: datetime,
    ) -> None:
        text = description or goal.descriptions.for_state(new_state, goal.display_name)
        if goal.attempt is not None:
            goal.attempt.finished_at = now
            goal.attempt.next_check_at = None
            text = f"{text} | {format_duration(now - goal.attempt.started_at)}"
        self._transition(snapshot, goal, new_state, text)

    def _skip_downstream(self, snapshot: LifecycleSnapshot, failed: GoalRecord) -> bool:
        queue: deque[str] = deque(snapshot.dependents_of(failed.unique_name))
        visited: set[str] = {failed.unique_name}
        skipped = False
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            goal = snapshot.goals[current]
            if goal.state in (GoalState.REQUESTED, GoalState.PLANNED):
                goal.reason = FailureReason.DEPENDENCY_FAILED
                self._transition(
                    snapshot,
                    goal,
                    GoalState.SKIPPED,
                    f"{goal.descriptions.for_state(GoalState.SKIPPED, goal.display_name)} ({failed.display_name} failed)",
                )
                skipped = True
            queue.extend(snapshot.dependents_of(current))
        return skipped

    def _cancel_in_place(self, snapshot: LifecycleSnapshot, reason: str | None, now: datetime) -> None:
        snapshot.cancelled = True
        snapshot.cancel_reason = reason
        text = f"Cancelled: {reason}" if reason else "Cancelled"
        for goal in snapshot.ordered_goals():
            if goal.is_terminal:
                continue
            goal.reason = FailureReason.CANCELLED
            if goal.attempt is not None and goal.attempt.finished_at is None:
                goal.attempt.finished_at = now
                goal.attempt.next_check_at = None
            self._transition(snapshot, goal, GoalState.SKIPPED, text)
        snapshot.updated_at = now
        logger.info("Cancelled lifecycle %s: %s", snapshot.lifecycle_id, reason or "no reason given")

    @staticmethod
    def _transition(
        snapshot: LifecycleSnapshot,
        goal: GoalRecord,
        new_state: GoalState,
        description: str | None = None,
    ) -> None:
        previous = goal.state
        goal.transition(new_state, description=description)
        logger.info(
            "Goal '%s' %s -> %s in lifecycle %s",
            goal.unique_name,
            previous.value,
            new_state.value,
            snapshot.lifecycle_id,
        )

    @staticmethod
    def _remember_event(snapshot: LifecycleSnapshot, event_id: str) -> None:
        snapshot.processed_event_ids.append(event_id)
        if len(snapshot.processed_event_ids) > _EVENT_HISTORY_LIMIT:
            del snapshot.processed_event_ids[:-_EVENT_HISTORY_LIMIT]

    def _check_plan(self, snapshot: LifecycleSnapshot) -> None:
        planned = {goal.unique_name for goal in self.goal_plan}
        if set(snapshot.goals) != planned or snapshot.name != self.goal_plan.name:
            raise PlanValidationError(
                f"Lifecycle {snapshot.lifecycle_id} '{snapshot.name}' was not planned from goal plan '{self.goal_plan.name}'"
            )
