"""Entry point for `python -m sdm_lifecycle` and the `sdm-lifecycle` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from sdm_lifecycle.controller import LifecycleController
from sdm_lifecycle.interpreter import Interpretation, K8sDeployInterpreter
from sdm_lifecycle.models import (
    RE_EVALUATION_KINDS,
    GoalState,
    LifecycleEvent,
    LifecycleEventKind,
    LifecycleSnapshot,
    PushInfo,
)
from sdm_lifecycle.settings import RuntimeSettings, ensure_kube_token
from sdm_lifecycle.state_store import LifecycleStateStore
from sdm_lifecycle.targets import KubernetesRestTarget


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan and advance conditional goal lifecycles")
    parser.add_argument(
        "--state-root",
        type=Path,
        default=None,
        help="Directory holding lifecycle snapshots (default: SDM_STATE_STORE_ROOT under cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    plan = commands.add_parser("plan", help="Interpret a project analysis and store a new lifecycle")
    plan.add_argument("--interpretation", type=Path, required=True, help="JSON file with the detected stack elements")
    plan.add_argument("--owner", required=True)
    plan.add_argument("--repo", required=True)
    plan.add_argument("--workspace-id", required=True)
    plan.add_argument("--branch", default="main")
    plan.add_argument("--sha", default="")
    plan.add_argument("--lifecycle-id", default=None, help="Optional explicit lifecycle identifier")

    advance = commands.add_parser("advance", help="Re-evaluate a stored lifecycle")
    advance.add_argument("lifecycle_id")
    advance.add_argument(
        "--event",
        choices=sorted(kind.value for kind in RE_EVALUATION_KINDS),
        default=LifecycleEventKind.TIMER_TICK.value,
        help="Trigger to record for this re-evaluation (default: timer_tick)",
    )

    cancel = commands.add_parser("cancel", help="Skip every unfinished goal of a lifecycle")
    cancel.add_argument("lifecycle_id")
    cancel.add_argument("--reason", default=None)

    show = commands.add_parser("show", help="Print a stored lifecycle as JSON")
    show.add_argument("lifecycle_id")

    archive = commands.add_parser("archive", help="Move a finished lifecycle to the archive")
    archive.add_argument("lifecycle_id")
    return parser.parse_args(argv)


def build_interpreter(settings: RuntimeSettings, *, connect: bool) -> K8sDeployInterpreter:
    target = None
    if connect and settings.kube_api_server:
        target = KubernetesRestTarget(
            settings.kube_api_server,
            token=ensure_kube_token(),
            timeout_seconds=settings.http_timeout_seconds,
        )
    elif connect:
        logging.warning("SDM_KUBE_API_SERVER is not set; deploy and stop goals will fail")
    return K8sDeployInterpreter(settings=settings, target=target)


def print_summary(snapshot: LifecycleSnapshot) -> None:
    print(f"lifecycle_id={snapshot.lifecycle_id}")
    outcome = snapshot.outcome
    print(f"outcome={outcome.value if outcome is not None else 'pending'}")
    for goal in snapshot.ordered_goals():
        phase = f" ({goal.phase})" if goal.phase else ""
        print(f"{goal.unique_name}: {goal.state.value} - {goal.description}{phase}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        state_root = args.state_root if args.state_root is not None else settings.state_store_path(Path.cwd())
        store = LifecycleStateStore(state_root)

        if args.command == "plan":
            interpretation = Interpretation.model_validate_json(args.interpretation.read_text(encoding="utf-8"))
            interpreter = build_interpreter(settings, connect=False)
            if not interpreter.enrich(interpretation) or interpretation.deploy_goals is None:
                print("deploy_goals=none")
                return 0
            push = PushInfo(
                owner=args.owner,
                repo=args.repo,
                branch=args.branch,
                sha=args.sha,
                workspace_id=args.workspace_id,
            )
            controller = LifecycleController(interpretation.deploy_goals, settings=settings)
            snapshot = controller.plan(push=push, lifecycle_id=args.lifecycle_id)
            store.write(snapshot)
            print_summary(snapshot)
            return 0

        if args.command == "show":
            print(store.read(args.lifecycle_id).model_dump_json(indent=2))
            return 0

        if args.command == "archive":
            path = store.archive(args.lifecycle_id)
            print(f"archived={path}")
            return 0

        interpreter = build_interpreter(settings, connect=args.command == "advance")
        controller = LifecycleController(interpreter.goal_plan(), settings=settings)
        if args.command == "cancel":
            snapshot = store.cancel(args.lifecycle_id, controller, args.reason)
        else:
            event = LifecycleEvent.trigger(LifecycleEventKind(args.event))
            snapshot = store.advance(args.lifecycle_id, controller, event)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Command %s failed: %s", args.command, exc)
        return 1

    print_summary(snapshot)
    return 1 if snapshot.outcome == GoalState.FAILURE else 0


if __name__ == "__main__":
    raise SystemExit(main())
