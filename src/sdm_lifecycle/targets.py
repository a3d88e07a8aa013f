"""Boundary contracts for the deployment target and the external readiness check.

The Kubernetes adapter below talks to the API server REST endpoints directly
and covers just the two calls the deploy goals need.  Anything that raises
``TargetAbsentError`` means the API reported the object as not found.
"""

from __future__ import annotations

import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .utils import deep_merge

logger = logging.getLogger(__name__)

_DEFAULT_HTTP_TIMEOUT_SECONDS = 30
_APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"
_MANAGED_BY = "sdm-lifecycle"


class DeploymentTargetError(RuntimeError):
    """Raised when the deployment target rejects or fails a request."""


class TargetAbsentError(DeploymentTargetError, LookupError):
    """Raised when the requested object does not exist on the target."""


class ApplicationData(BaseModel):
    """Everything needed to render and address one deployed application."""

    workspace_id: str
    name: str
    ns: str
    image: str
    host: str
    path: str = "/"
    port: int | None = None
    replicas: int = Field(default=1, ge=0)
    image_pull_secret: str | None = None
    deployment_spec: dict[str, Any] = Field(default_factory=dict)
    ingress_spec: dict[str, Any] = Field(default_factory=dict)


class DeploymentTarget(Protocol):
    def delete_namespaced_deployment(
        self,
        name: str,
        namespace: str,
        propagation_policy: str = "Foreground",
    ) -> None:
        ...

    def apply_deployment(self, manifest: dict[str, Any]) -> dict[str, Any]:
        ...


class HttpExchange(Protocol):
    """HTTP-style client: returns a response or raises."""

    def exchange(self, url: str) -> Any:  # noqa: ANN401 - response shape belongs to the client
        ...


def build_deployment_manifest(app: ApplicationData) -> dict[str, Any]:
    """Render the ``apps/v1`` Deployment for ``app``.

    The application's own container always comes first; ``app.deployment_spec``
    is merged on top, so its first container entry refines the main container
    and any further entries are added alongside it.
    """
    labels = {
        "app.kubernetes.io/name": app.name,
        "app.kubernetes.io/part-of": app.name,
        "app.kubernetes.io/managed-by": _MANAGED_BY,
        "atomist.com/workspaceId": app.workspace_id,
    }
    container: dict[str, Any] = {"name": app.name, "image": app.image}
    if app.port is not None:
        container["ports"] = [{"name": "http", "containerPort": app.port, "protocol": "TCP"}]
    pod_spec: dict[str, Any] = {"containers": [container]}
    if app.image_pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": app.image_pull_secret}]

    manifest: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": app.name, "namespace": app.ns, "labels": dict(labels)},
        "spec": {
            "replicas": app.replicas,
            "selector": {"matchLabels": {"app.kubernetes.io/name": app.name}},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": pod_spec,
            },
        },
    }
    return deep_merge(manifest, app.deployment_spec)


def app_external_urls(app: ApplicationData) -> list[dict[str, str]]:
    path = app.path if app.path.startswith("/") else f"/{app.path}"
    return [{"label": app.name, "url": f"https://{app.host}{path}"}]


class KubernetesRestTarget:
    """Deployment target speaking to a Kubernetes API server over HTTPS."""

    def __init__(
        self,
        server: str,
        *,
        token: str | None = None,
        timeout_seconds: int = _DEFAULT_HTTP_TIMEOUT_SECONDS,
        ssl_context: ssl.SSLContext | None = None,
        field_manager: str = _MANAGED_BY,
    ) -> None:
        if not server.strip():
            raise ValueError("server must be non-empty")
        self.server = server.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.ssl_context = ssl_context
        self.field_manager = field_manager

    @staticmethod
    def _deployment_path(name: str, namespace: str) -> str:
        ns = urllib.parse.quote(namespace, safe="")
        dep = urllib.parse.quote(name, safe="")
        return f"/apis/apps/v1/namespaces/{ns}/deployments/{dep}"

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        content_type: str = "application/json",
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = None
        if payload is not None:
            headers["Content-Type"] = content_type
            data = json.dumps(payload).encode("utf-8")
        url = f"{self.server}{path}"
        request = urllib.request.Request(url, method=method, headers=headers, data=data)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds, context=self.ssl_context) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = ""
            try:
                detail = exc.read().decode("utf-8", errors="replace")[:500]
            except Exception:  # noqa: BLE001 - detail is best effort
                pass
            if exc.code == 404:
                raise TargetAbsentError(f"{method} {path}: not found") from exc
            logger.error("HTTP %d from %s %s: %s", exc.code, method, url, detail)
            raise DeploymentTargetError(f"{method} {path} failed with HTTP {exc.code}: {detail}") from exc
        except urllib.error.URLError as exc:
            raise DeploymentTargetError(f"{method} {path} failed: {exc.reason}") from exc
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise DeploymentTargetError(f"{method} {path} returned invalid JSON") from exc

    def delete_namespaced_deployment(
        self,
        name: str,
        namespace: str,
        propagation_policy: str = "Foreground",
    ) -> None:
        self._request(
            "DELETE",
            self._deployment_path(name, namespace),
            {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": propagation_policy},
        )

    def apply_deployment(self, manifest: dict[str, Any]) -> dict[str, Any]:
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise ValueError("deployment manifest requires metadata.name and metadata.namespace")
        query = urllib.parse.urlencode({"fieldManager": self.field_manager, "force": "true"})
        return self._request(
            "PATCH",
            f"{self._deployment_path(name, namespace)}?{query}",
            manifest,
            content_type=_APPLY_PATCH_CONTENT_TYPE,
        )


class UrllibExchange:
    """Minimal GET client used for readiness probes."""

    def __init__(self, *, timeout_seconds: int = _DEFAULT_HTTP_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def exchange(self, url: str) -> dict[str, Any]:
        request = urllib.request.Request(url, method="GET", headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                return {"status": response.status, "body": response.read().decode("utf-8", errors="replace")}
        except urllib.error.HTTPError as exc:
            raise RuntimeError(f"GET {url} failed with HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise RuntimeError(f"GET {url} failed: {exc.reason}") from exc


def host_resolves(http: HttpExchange, dns_api_base: str, host: str) -> bool:
    """Return whether the DNS lookup service knows an A record for ``host``.

    Any exchange failure counts as "not ready yet".
    """
    url = f"{dns_api_base.rstrip('/')}/A/{urllib.parse.quote(host, safe='')}"
    try:
        http.exchange(url)
    except Exception as exc:  # noqa: BLE001 - an unanswered lookup just means not ready
        logger.debug("DNS lookup for %s not ready: %s", host, exc)
        return False
    return True
