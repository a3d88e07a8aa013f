from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sdm_lifecycle.controller import LifecycleController
from sdm_lifecycle.executor import BufferedProgressLog
from sdm_lifecycle.goals import GoalDefinition, GoalPlan, Precondition
from sdm_lifecycle.models import ExecutionResult, GoalState, LifecycleEvent
from sdm_lifecycle.settings import RuntimeSettings
from sdm_lifecycle.state_store import LifecycleStateStore, sanitize_lifecycle_id


T0 = datetime(2026, 5, 4, 8, 0, tzinfo=UTC)


def _controller(ready_after_seconds: int = 0) -> LifecycleController:
    build = GoalDefinition(unique_name="build").with_executor("build", lambda ctx: ExecutionResult(code=0))
    publish = GoalDefinition(
        unique_name="publish",
        precondition=Precondition(
            retries=3,
            timeout_seconds=10,
            check=lambda ctx: ctx.now >= T0 + timedelta(seconds=ready_after_seconds),
        ),
    ).with_executor("publish", lambda ctx: ExecutionResult(code=0, description="Published"))
    plan = GoalPlan("release").plan(build).plan(publish).after(build)
    return LifecycleController(plan, settings=RuntimeSettings(), progress_log=BufferedProgressLog())


def test_write_and_read_round_trip(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path / "state")
    snapshot = _controller().plan(lifecycle_id="LC-one", now=T0)

    path = store.write(snapshot)

    assert path == tmp_path / "state" / "lifecycles" / "LC-one.json"
    assert store.read("LC-one").model_dump() == snapshot.model_dump()
    assert store.list_lifecycles() == ["LC-one"]


def test_read_missing_lifecycle_raises(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)

    with pytest.raises(FileNotFoundError):
        store.read("LC-missing")


def test_read_rejects_corrupt_snapshot(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.lifecycle_path("LC-bad").write_text('{"name": 1}', encoding="utf-8")

    with pytest.raises(ValueError, match="failed validation"):
        store.read("LC-bad")


def test_advance_persists_polling_state_between_calls(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.write(_controller(ready_after_seconds=10).plan(lifecycle_id="LC-poll", now=T0))

    # A fresh controller per call, as after a process restart.
    first = store.advance("LC-poll", _controller(ready_after_seconds=10), LifecycleEvent.tick(T0))
    assert first.goals["publish"].state == GoalState.IN_PROCESS
    persisted = store.read("LC-poll").goals["publish"].attempt
    assert persisted is not None and persisted.checks == 1
    assert persisted.next_check_at == T0 + timedelta(seconds=10)

    second = store.advance("LC-poll", _controller(ready_after_seconds=10), LifecycleEvent.tick(T0 + timedelta(seconds=10)))
    assert second.goals["publish"].state == GoalState.SUCCESS
    assert store.read("LC-poll").goals["publish"].state == GoalState.SUCCESS


def test_cancel_persists_skipped_goals(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.write(_controller(ready_after_seconds=600).plan(lifecycle_id="LC-cancel", now=T0))
    store.advance("LC-cancel", _controller(ready_after_seconds=600), LifecycleEvent.tick(T0))

    cancelled = store.cancel("LC-cancel", _controller(ready_after_seconds=600), "operator request")

    assert cancelled.goals["publish"].state == GoalState.SKIPPED
    assert store.read("LC-cancel").cancel_reason == "operator request"


def test_archive_moves_finished_lifecycle_and_freezes_it(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    controller = _controller()
    store.write(controller.plan(lifecycle_id="LC-done", now=T0))
    finished = store.advance("LC-done", controller, LifecycleEvent.tick(T0))
    assert finished.outcome == GoalState.SUCCESS

    archived_path = store.archive("LC-done")

    assert archived_path == tmp_path / "archive" / "LC-done.json"
    assert store.list_lifecycles() == []
    assert store.list_lifecycles(include_archived=True) == ["LC-done"]
    assert store.read("LC-done").archived is True
    with pytest.raises(ValueError, match="archived"):
        store.write(finished)
    with pytest.raises(FileNotFoundError):
        store.advance("LC-done", controller, LifecycleEvent.tick(T0))


def test_archive_rejects_unfinished_lifecycle(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.write(_controller().plan(lifecycle_id="LC-open", now=T0))

    with pytest.raises(ValueError, match="unfinished goals: build, publish"):
        store.archive("LC-open")


def test_sanitize_lifecycle_id_rejects_path_tricks() -> None:
    assert sanitize_lifecycle_id(" LC-abc ") == "LC-abc"
    with pytest.raises(ValueError):
        sanitize_lifecycle_id("../etc/passwd")
    with pytest.raises(ValueError):
        sanitize_lifecycle_id("  ")
