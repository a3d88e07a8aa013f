from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from typing import Any

import pytest

from sdm_lifecycle.executor import BufferedProgressLog, tolerate_absent
from sdm_lifecycle.targets import (
    ApplicationData,
    DeploymentTargetError,
    KubernetesRestTarget,
    TargetAbsentError,
    UrllibExchange,
    app_external_urls,
    build_deployment_manifest,
    host_resolves,
)


class _FakeResponse:
    def __init__(self, body: str, status: int = 200) -> None:
        self._body = body.encode("utf-8")
        self.status = status

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def _http_error(url: str, code: int, body: str = "") -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, "error", {}, io.BytesIO(body.encode("utf-8")))  # type: ignore[arg-type]


def _app(**overrides: Any) -> ApplicationData:
    fields: dict[str, Any] = {
        "workspace_id": "AW123",
        "name": "demo-app",
        "ns": "sdm-aw123",
        "image": "atomist/demo-app:abc123",
        "host": "demo-app-atomist-aw123.g.atomist.com",
        "port": 8080,
        "image_pull_secret": "sdm-imagepullsecret",
    }
    fields.update(overrides)
    return ApplicationData(**fields)


def test_build_deployment_manifest_puts_app_container_first() -> None:
    app = _app(
        deployment_spec={
            "spec": {"template": {"spec": {"containers": [{"env": [{"name": "MODE", "value": "test"}]}, {"name": "mongo"}]}}}
        }
    )

    manifest = build_deployment_manifest(app)

    assert manifest["apiVersion"] == "apps/v1"
    assert manifest["kind"] == "Deployment"
    assert manifest["metadata"]["namespace"] == "sdm-aw123"
    assert manifest["metadata"]["labels"]["atomist.com/workspaceId"] == "AW123"
    pod_spec = manifest["spec"]["template"]["spec"]
    assert pod_spec["imagePullSecrets"] == [{"name": "sdm-imagepullsecret"}]
    assert pod_spec["containers"][0] == {
        "name": "demo-app",
        "image": "atomist/demo-app:abc123",
        "ports": [{"name": "http", "containerPort": 8080, "protocol": "TCP"}],
        "env": [{"name": "MODE", "value": "test"}],
    }
    assert pod_spec["containers"][1] == {"name": "mongo"}
    assert manifest["spec"]["selector"] == {"matchLabels": {"app.kubernetes.io/name": "demo-app"}}


def test_app_external_urls_normalizes_path() -> None:
    assert app_external_urls(_app(path="api")) == [
        {"label": "demo-app", "url": "https://demo-app-atomist-aw123.g.atomist.com/api"}
    ]


def test_kubernetes_delete_sends_foreground_propagation(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def _fake_urlopen(request: urllib.request.Request, timeout: int, context: object) -> _FakeResponse:
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        captured["headers"] = dict(request.header_items())
        captured["body"] = json.loads(request.data)  # type: ignore[arg-type]
        return _FakeResponse('{"kind": "Status", "status": "Success"}')

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)
    target = KubernetesRestTarget("https://kube.local:6443/", token="secret")

    target.delete_namespaced_deployment("demo-app", "sdm-aw123")

    assert captured["method"] == "DELETE"
    assert captured["url"] == "https://kube.local:6443/apis/apps/v1/namespaces/sdm-aw123/deployments/demo-app"
    assert captured["headers"]["Authorization"] == "Bearer secret"
    assert captured["body"]["propagationPolicy"] == "Foreground"


def test_kubernetes_not_found_maps_to_target_absent(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_urlopen(request: urllib.request.Request, timeout: int, context: object) -> _FakeResponse:
        raise _http_error(request.full_url, 404, '{"reason": "NotFound"}')

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)
    target = KubernetesRestTarget("https://kube.local")
    log = BufferedProgressLog()

    with pytest.raises(TargetAbsentError):
        target.delete_namespaced_deployment("demo-app", "sdm-aw123")
    removed = tolerate_absent(
        lambda: target.delete_namespaced_deployment("demo-app", "sdm-aw123"),
        target="Deployment sdm-aw123/demo-app",
        progress_log=log,
    )

    assert removed is False
    assert log.lines == ["Deployment sdm-aw123/demo-app already absent"]


def test_kubernetes_other_errors_propagate(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_urlopen(request: urllib.request.Request, timeout: int, context: object) -> _FakeResponse:
        raise _http_error(request.full_url, 403, "forbidden")

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)
    target = KubernetesRestTarget("https://kube.local")

    with pytest.raises(DeploymentTargetError, match="HTTP 403"):
        tolerate_absent(lambda: target.delete_namespaced_deployment("demo-app", "sdm-aw123"), target="deployment")


def test_kubernetes_apply_uses_server_side_apply(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def _fake_urlopen(request: urllib.request.Request, timeout: int, context: object) -> _FakeResponse:
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        captured["content_type"] = request.get_header("Content-type")
        return _FakeResponse(json.dumps({"metadata": {"name": "demo-app"}}))

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)
    target = KubernetesRestTarget("https://kube.local")

    applied = target.apply_deployment(build_deployment_manifest(_app()))

    assert applied == {"metadata": {"name": "demo-app"}}
    assert captured["method"] == "PATCH"
    assert captured["content_type"] == "application/apply-patch+yaml"
    assert captured["url"].endswith("/deployments/demo-app?fieldManager=sdm-lifecycle&force=true")


def test_kubernetes_apply_requires_name_and_namespace() -> None:
    with pytest.raises(ValueError):
        KubernetesRestTarget("https://kube.local").apply_deployment({"metadata": {"name": "x"}})


def test_host_resolves_treats_failures_as_not_ready() -> None:
    class _Exchange:
        def __init__(self, error: Exception | None) -> None:
            self.error = error
            self.urls: list[str] = []

        def exchange(self, url: str) -> dict[str, Any]:
            self.urls.append(url)
            if self.error is not None:
                raise self.error
            return {"status": 200}

    ready = _Exchange(None)
    missing = _Exchange(RuntimeError("GET failed with HTTP 404"))

    assert host_resolves(ready, "https://dns-api.org/", "demo.g.atomist.com") is True
    assert ready.urls == ["https://dns-api.org/A/demo.g.atomist.com"]
    assert host_resolves(missing, "https://dns-api.org", "demo.g.atomist.com") is False


def test_urllib_exchange_raises_on_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_urlopen(request: urllib.request.Request, timeout: int) -> _FakeResponse:
        raise _http_error(request.full_url, 404)

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)

    with pytest.raises(RuntimeError, match="HTTP 404"):
        UrllibExchange(timeout_seconds=1).exchange("https://dns-api.org/A/missing.example")
