"""Service registrations carried in goal data and their merge into a deployment spec.

Goal data may contain a ``@atomist/sdm/service`` map of named registrations.
Each entry is one of the known variants below, discriminated on ``type``.
Entries that cannot be parsed are reported as warnings on the merge report.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .utils import deep_merge

logger = logging.getLogger(__name__)

SERVICE_REGISTRATION_DATA_KEY = "@atomist/sdm/service"
K8S_SERVICE_TYPE = "atomist.com/sdm/service/k8s"
DOCKER_SERVICE_TYPE = "atomist.com/sdm/service/docker"


class K8sServiceSpec(BaseModel):
    container: dict[str, Any] | list[dict[str, Any]] | None = None
    init_container: dict[str, Any] | list[dict[str, Any]] | None = Field(default=None, alias="initContainer")
    volume: dict[str, Any] | list[dict[str, Any]] | None = None

    model_config = ConfigDict(populate_by_name=True)


class K8sServiceRegistration(BaseModel):
    type: Literal["atomist.com/sdm/service/k8s"]
    spec: K8sServiceSpec = Field(default_factory=K8sServiceSpec)


class DockerServiceRegistration(BaseModel):
    type: Literal["atomist.com/sdm/service/docker"]
    spec: dict[str, Any] = Field(default_factory=dict)


ServiceRegistration = Annotated[
    Union[K8sServiceRegistration, DockerServiceRegistration],
    Field(discriminator="type"),
]
_REGISTRATION_ADAPTER: TypeAdapter[K8sServiceRegistration | DockerServiceRegistration] = TypeAdapter(
    ServiceRegistration
)


@dataclass
class MergeReport:
    deployment_spec: dict[str, Any]
    applied: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _as_list(value: dict[str, Any] | list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def empty_deployment_spec() -> dict[str, Any]:
    """Partial deployment whose single empty container refines the application's own container."""
    return {"spec": {"template": {"spec": {"containers": [{}]}}}}


def parse_service_registrations(
    goal_data: str | dict[str, Any] | None,
    *,
    goal_name: str = "",
) -> tuple[dict[str, K8sServiceRegistration | DockerServiceRegistration], list[str]]:
    """Extract typed service registrations from raw goal data.

    Returns:
        The parsed registrations by service name and the warnings collected
        for data that could not be used.
    """
    warnings: list[str] = []
    if goal_data is None or goal_data == "":
        return {}, warnings
    data: Any = goal_data
    if isinstance(goal_data, str):
        try:
            data = json.loads(goal_data)
        except json.JSONDecodeError:
            warnings.append(f"Failed to parse goal data on '{goal_name}'")
            logger.warning("Failed to parse goal data on '%s'", goal_name)
            return {}, warnings
    if not isinstance(data, dict):
        warnings.append(f"Goal data on '{goal_name}' is not a JSON object")
        return {}, warnings

    raw_services = data.get(SERVICE_REGISTRATION_DATA_KEY) or {}
    if not isinstance(raw_services, dict):
        warnings.append(f"Service registrations on '{goal_name}' are not a JSON object")
        return {}, warnings

    registrations: dict[str, K8sServiceRegistration | DockerServiceRegistration] = {}
    for name, raw in raw_services.items():
        service_type = raw.get("type") if isinstance(raw, dict) else None
        logger.debug("Service with name '%s' and type '%s' found for goal '%s'", name, service_type, goal_name)
        try:
            registrations[name] = _REGISTRATION_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            message = f"Ignoring service '{name}' with unsupported type {service_type!r}"
            if service_type in (K8S_SERVICE_TYPE, DOCKER_SERVICE_TYPE):
                message = f"Ignoring malformed service '{name}' of type {service_type!r}: {exc.error_count()} error(s)"
            warnings.append(message)
            logger.warning("%s on goal '%s'", message, goal_name)
    return registrations, warnings


def merge_service_registrations(
    deployment_spec: dict[str, Any],
    registrations: dict[str, K8sServiceRegistration | DockerServiceRegistration],
) -> MergeReport:
    """Add the containers, init containers and volumes of Kubernetes services to ``deployment_spec``."""
    merged = deep_merge(empty_deployment_spec(), deployment_spec)
    pod_spec = merged["spec"]["template"]["spec"]
    report = MergeReport(deployment_spec=merged)
    for name, registration in registrations.items():
        if isinstance(registration, DockerServiceRegistration):
            report.warnings.append(f"Service '{name}' is a Docker service and does not apply to a Kubernetes deployment")
            continue
        spec = registration.spec
        pod_spec.setdefault("containers", []).extend(_as_list(spec.container))
        init_containers = _as_list(spec.init_container)
        if init_containers:
            pod_spec.setdefault("initContainers", []).extend(init_containers)
        volumes = _as_list(spec.volume)
        if volumes:
            pod_spec.setdefault("volumes", []).extend(volumes)
        report.applied.append(name)
    return report
