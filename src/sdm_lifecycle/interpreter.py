"""Kubernetes deploy interpreter: contributes the ``testing`` deploy chain.

When the project analysis detected a ``k8s`` element, :meth:`K8sDeployInterpreter.enrich`
attaches a ``test deploy`` goal plan to the interpretation::

    deploy to testing -> verify testing deploy -> stop testing deploy

The deploy goal publishes its application data on its record, the verify
goal waits until the application host resolves, and the stop goal tears the
deployment down once it has been up for ``stop_after_minutes``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .executor import GoalContext, safe_write, tolerate_absent
from .goals import GoalDefinition, GoalPlan, Precondition
from .models import ExecutionResult, GoalDescriptions, PushInfo
from .poller import PollOutcome, ProgressUpdate
from .services import (
    K8S_SERVICE_TYPE,
    SERVICE_REGISTRATION_DATA_KEY,
    merge_service_registrations,
    parse_service_registrations,
)
from .settings import RuntimeSettings
from .targets import (
    ApplicationData,
    DeploymentTarget,
    DeploymentTargetError,
    HttpExchange,
    UrllibExchange,
    app_external_urls,
    build_deployment_manifest,
    host_resolves,
)
from .utils import code_line, deep_merge, format_duration, slugify_name

logger = logging.getLogger(__name__)

TESTING_ENVIRONMENT = "testing"
DEPLOY_GOAL = "deploy to testing"
VERIFY_GOAL = "verify testing deploy"
STOP_GOAL = "stop testing deploy"
TEST_DEPLOY_PLAN = "test deploy"

# Goal data key holding the application data of a Kubernetes deployment.
K8S_APP_DATA_KEY = "@atomist/sdm-pack-k8s"

MONGO_SERVICE = {
    "type": K8S_SERVICE_TYPE,
    "spec": {
        "container": {
            "name": "mongo",
            "image": "mongo:3.6",
            "ports": [{"name": "mongo", "containerPort": 27017, "protocol": "TCP"}],
        },
    },
}

INGRESS_SPEC = {
    "metadata": {
        "annotations": {
            "kubernetes.io/ingress.class": "nginx",
            "nginx.ingress.kubernetes.io/client-body-buffer-size": "1m",
        },
    },
}


class StackDescriptor(BaseModel):
    """One technology element found by project analysis, e.g. ``k8s`` or ``mongo``."""

    name: str
    tags: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class Interpretation(BaseModel):
    elements: dict[str, StackDescriptor] = Field(default_factory=dict)
    deploy_goals: GoalPlan | None = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)


def get_namespace(workspace_id: str, environment: str) -> str:
    if TESTING_ENVIRONMENT in environment:
        return f"sdm-testing-{workspace_id.lower()}"
    return f"sdm-{workspace_id.lower()}"


def application_data(
    push: PushInfo,
    goal_data: dict[str, Any] | None,
    settings: RuntimeSettings,
) -> tuple[ApplicationData, list[str]]:
    """Build the application to deploy for ``push``.

    Partial application data stored under ``K8S_APP_DATA_KEY`` (image, port,
    replicas) overrides the defaults; service registrations in ``goal_data``
    add their containers to the deployment spec.

    Returns:
        The application data and the warnings raised by the service registrations.
    """
    registrations, warnings = parse_service_registrations(goal_data, goal_name=DEPLOY_GOAL)
    overrides: dict[str, Any] = dict((goal_data or {}).get(K8S_APP_DATA_KEY) or {})
    report = merge_service_registrations(overrides.pop("deployment_spec", {}) or {}, registrations)

    fields: dict[str, Any] = {
        "workspace_id": push.workspace_id,
        "name": slugify_name(push.repo),
        "ns": get_namespace(push.workspace_id, settings.environment),
        "image": f"{push.owner.lower()}/{push.repo.lower()}:{push.sha or 'latest'}",
        "host": f"{push.repo.lower()}-{push.owner.lower()}-{push.workspace_id.lower()}.{settings.host_domain}",
        "path": "/",
        "image_pull_secret": settings.image_pull_secret or None,
        "ingress_spec": deep_merge(INGRESS_SPEC, overrides.pop("ingress_spec", {}) or {}),
    }
    for key in ("image", "port", "replicas"):
        if overrides.get(key) is not None:
            fields[key] = overrides[key]
    fields["deployment_spec"] = report.deployment_spec
    return ApplicationData(**fields), warnings + report.warnings


def deployed_application(ctx: GoalContext) -> ApplicationData:
    """Application data published by the deploy goal.

    The goal's own record is used when it carries the data, otherwise the
    deploy goal's record in the same lifecycle.

    Raises:
        LookupError: If no deployment has been recorded yet.
    """
    for data in (ctx.goal.data, ctx.goal_data(DEPLOY_GOAL)):
        raw = (data or {}).get(K8S_APP_DATA_KEY)
        if raw and "host" in raw:
            return ApplicationData.model_validate(raw)
    raise LookupError(f"No Kubernetes deployment data recorded for lifecycle {ctx.lifecycle_id}")


def _require_push(ctx: GoalContext) -> PushInfo:
    if ctx.push is None:
        raise ValueError(f"Goal '{ctx.goal.unique_name}' needs the push that triggered lifecycle {ctx.lifecycle_id}")
    return ctx.push


class K8sDeployInterpreter:
    """Attaches the ``testing`` deploy goals to interpretations of Kubernetes projects."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        target: DeploymentTarget | None = None,
        http: HttpExchange | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.target = target
        self.http = http if http is not None else UrllibExchange(timeout_seconds=self.settings.http_timeout_seconds)

    def enrich(self, interpretation: Interpretation) -> bool:
        if "k8s" not in interpretation.elements:
            return False
        data: dict[str, Any] = {}
        k8s = interpretation.elements["k8s"]
        overrides = {key: k8s.attributes[key] for key in ("image", "port", "replicas") if key in k8s.attributes}
        if overrides:
            data[K8S_APP_DATA_KEY] = overrides
        if "mongo" in interpretation.elements:
            data[SERVICE_REGISTRATION_DATA_KEY] = {"mongo": MONGO_SERVICE}
        interpretation.deploy_goals = self.goal_plan(data or None)
        logger.info("Planned '%s' goals for Kubernetes stack", TEST_DEPLOY_PLAN)
        return True

    def goal_plan(self, data: dict[str, Any] | None = None) -> GoalPlan:
        deploy = self.deploy_goal(data)
        verify = self.verify_goal()
        stop = self.stop_goal()
        return GoalPlan(TEST_DEPLOY_PLAN).plan(deploy).plan(verify).after(deploy).plan(stop).after(verify)

    def _label(self, push: PushInfo) -> str:
        return code_line(f"{get_namespace(push.workspace_id, self.settings.environment)}:{push.repo}")

    # ------------------------------------------------------------------
    # deploy to testing
    # ------------------------------------------------------------------

    def deploy_goal(self, data: dict[str, Any] | None = None) -> GoalDefinition:
        return GoalDefinition(
            unique_name=DEPLOY_GOAL,
            display_name="deploy to `testing`",
            descriptions=GoalDescriptions(
                planned="Planned: deploy to `testing`",
                in_process="Deploying to `testing`",
                completed="Deployed to `testing`",
                failed="Deployment to `testing` failed",
            ),
            environment=TESTING_ENVIRONMENT,
            data=data,
        ).with_executor("kubernetes-deploy-testing", self._deploy)

    def _deploy(self, ctx: GoalContext) -> ExecutionResult:
        push = _require_push(ctx)
        app, warnings = application_data(push, ctx.goal.data, self.settings)
        for warning in warnings:
            safe_write(ctx.progress_log, warning)
        if self.target is None:
            raise DeploymentTargetError("No Kubernetes API server configured")
        safe_write(ctx.progress_log, f"Deploying {app.ns}/{app.name} with image {app.image}")
        self.target.apply_deployment(build_deployment_manifest(app))

        data = dict(ctx.goal.data or {})
        data[K8S_APP_DATA_KEY] = app.model_dump(mode="json")
        return ExecutionResult(
            code=0,
            description=f"Deployed {self._label(push)}",
            external_urls=app_external_urls(app),
            data=data,
        )

    # ------------------------------------------------------------------
    # verify testing deploy
    # ------------------------------------------------------------------

    def verify_goal(self) -> GoalDefinition:
        return GoalDefinition(
            unique_name=VERIFY_GOAL,
            display_name="verify `testing` deploy",
            descriptions=GoalDescriptions(
                completed="Verified `testing` deploy",
                in_process="Verifying `testing` deploy",
            ),
            environment=TESTING_ENVIRONMENT,
            precondition=Precondition(
                retries=self.settings.verify_retries,
                timeout_seconds=self.settings.verify_timeout_seconds,
                check=self._host_resolves,
                on_waiting=self._verifying,
            ),
        ).with_executor("verify-test-deploy", self._verify)

    def _host_resolves(self, ctx: GoalContext) -> bool:
        app = deployed_application(ctx)
        return host_resolves(self.http, self.settings.dns_api_base, app.host)

    def _verifying(self, ctx: GoalContext, outcome: PollOutcome) -> ProgressUpdate:
        return ProgressUpdate(description=f"Verifying {self._label(_require_push(ctx))}")

    def _verify(self, ctx: GoalContext) -> ExecutionResult:
        app = deployed_application(ctx)
        return ExecutionResult(
            code=0,
            description=f"Verified {self._label(_require_push(ctx))}",
            external_urls=app_external_urls(app),
        )

    # ------------------------------------------------------------------
    # stop testing deploy
    # ------------------------------------------------------------------

    def stop_goal(self) -> GoalDefinition:
        return GoalDefinition(
            unique_name=STOP_GOAL,
            display_name="stop `testing` deploy",
            descriptions=GoalDescriptions(
                completed="Stopped `testing` deploy",
                in_process="Stopping `testing` deploy",
            ),
            environment=TESTING_ENVIRONMENT,
            precondition=Precondition(
                retries=self.settings.stop_retries,
                timeout_seconds=self.settings.stop_timeout_seconds,
                check=self._deadline_reached,
                on_waiting=self._stopping,
            ),
        ).with_executor("stop-test-deploy", self._stop)

    def _stop_at(self, ctx: GoalContext) -> datetime:
        return ctx.attempt.started_at + timedelta(minutes=self.settings.stop_after_minutes)

    def _deadline_reached(self, ctx: GoalContext) -> bool:
        return ctx.now >= self._stop_at(ctx)

    def _stopping(self, ctx: GoalContext, outcome: PollOutcome) -> ProgressUpdate:
        remaining = self._stop_at(ctx) - ctx.now
        return ProgressUpdate(
            description=f"Stopping {self._label(_require_push(ctx))}",
            phase=f"in {format_duration(remaining, minutes_only=True)}",
        )

    def _stop(self, ctx: GoalContext) -> ExecutionResult:
        push = _require_push(ctx)
        namespace = get_namespace(push.workspace_id, self.settings.environment)
        try:
            name = deployed_application(ctx).name
        except LookupError:
            name = slugify_name(push.repo)
        safe_write(ctx.progress_log, "Stopping test deployment")
        try:
            if self.target is None:
                raise DeploymentTargetError("No Kubernetes API server configured")
            target = self.target
            tolerate_absent(
                lambda: target.delete_namespaced_deployment(name, namespace, propagation_policy="Foreground"),
                target=f"Deployment {namespace}/{name}",
                progress_log=ctx.progress_log,
            )
        except Exception as exc:  # noqa: BLE001 - reported as a failed goal
            safe_write(ctx.progress_log, f"Failed to delete test deployment: {exc}")
            logger.warning("Failed to delete test deployment %s/%s", namespace, name, exc_info=True)
            return ExecutionResult(code=1)
        return ExecutionResult(code=0, description=f"Stopped {self._label(push)}")
