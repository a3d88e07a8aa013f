from importlib.metadata import version

from .canonical import snapshot_fingerprint, to_canonical_json
from .controller import LifecycleController
from .executor import BufferedProgressLog, GoalContext, LoggingProgressLog, invoke_executor, tolerate_absent
from .goals import GoalDefinition, GoalPlan, PlanValidationError, Precondition
from .interpreter import Interpretation, K8sDeployInterpreter, StackDescriptor, get_namespace
from .models import (
    ExecutionAttempt,
    ExecutionResult,
    ExternalUrl,
    FailureReason,
    GoalDescriptions,
    GoalRecord,
    GoalState,
    IllegalTransitionError,
    LifecycleEvent,
    LifecycleEventKind,
    LifecycleSnapshot,
    PreconditionPolicy,
    PushInfo,
)
from .poller import PollOutcome, PollStatus, ProgressUpdate, poll, poll_step
from .settings import RuntimeSettings
from .state_store import LifecycleStateStore
from .targets import DeploymentTargetError, TargetAbsentError
from .utils import slugify_name, validate_goal_dag


def get_version() -> str:
    try:
        return version("sdm-lifecycle")
    except Exception:
        return "0.0.0"


__all__ = [
    "BufferedProgressLog",
    "DeploymentTargetError",
    "ExecutionAttempt",
    "ExecutionResult",
    "ExternalUrl",
    "FailureReason",
    "GoalContext",
    "GoalDefinition",
    "GoalDescriptions",
    "GoalPlan",
    "GoalRecord",
    "GoalState",
    "IllegalTransitionError",
    "Interpretation",
    "K8sDeployInterpreter",
    "LifecycleController",
    "LifecycleEvent",
    "LifecycleEventKind",
    "LifecycleSnapshot",
    "LifecycleStateStore",
    "LoggingProgressLog",
    "PlanValidationError",
    "PollOutcome",
    "PollStatus",
    "Precondition",
    "PreconditionPolicy",
    "ProgressUpdate",
    "PushInfo",
    "RuntimeSettings",
    "StackDescriptor",
    "TargetAbsentError",
    "get_namespace",
    "get_version",
    "invoke_executor",
    "poll",
    "poll_step",
    "slugify_name",
    "snapshot_fingerprint",
    "to_canonical_json",
    "tolerate_absent",
    "validate_goal_dag",
]
