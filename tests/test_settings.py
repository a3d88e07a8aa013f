from __future__ import annotations

from pathlib import Path

import pytest

from sdm_lifecycle.settings import RuntimeSettings, ensure_kube_token


_ENV_NAMES = (
    "SDM_ENVIRONMENT",
    "SDM_STATE_STORE_ROOT",
    "SDM_HOST_DOMAIN",
    "SDM_IMAGE_PULL_SECRET",
    "SDM_DNS_API_BASE",
    "SDM_VERIFY_RETRIES",
    "SDM_VERIFY_TIMEOUT_SECONDS",
    "SDM_STOP_RETRIES",
    "SDM_STOP_TIMEOUT_SECONDS",
    "SDM_STOP_AFTER_MINUTES",
    "SDM_RECURSION_LIMIT",
    "SDM_KUBE_API_SERVER",
    "SDM_HTTP_TIMEOUT_SECONDS",
    "SDM_KUBE_TOKEN",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        # setenv first so teardown also undoes values written by load_dotenv.
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.environment == "sdm"
    assert settings.is_testing is False
    assert (settings.verify_retries, settings.verify_timeout_seconds) == (60, 10)
    assert (settings.stop_retries, settings.stop_timeout_seconds, settings.stop_after_minutes) == (20, 60, 10)
    assert settings.host_domain == "g.atomist.com"


def test_runtime_settings_from_env_validation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SDM_ENVIRONMENT", " sdm-testing ")
    monkeypatch.setenv("SDM_HOST_DOMAIN", "Apps.Example.COM.")
    monkeypatch.setenv("SDM_VERIFY_RETRIES", "5")
    monkeypatch.setenv("SDM_KUBE_API_SERVER", " https://kube.local ")

    settings = RuntimeSettings.from_env()

    assert settings.environment == "sdm-testing"
    assert settings.is_testing is True
    assert settings.host_domain == "apps.example.com"
    assert settings.verify_retries == 5
    assert settings.kube_api_server == "https://kube.local"


def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SDM_VERIFY_RETRIES", "many")
    with pytest.raises(ValueError, match="SDM_VERIFY_RETRIES must be an integer"):
        RuntimeSettings.from_env()

    monkeypatch.setenv("SDM_VERIFY_RETRIES", "-1")
    with pytest.raises(ValueError, match=">= 0"):
        RuntimeSettings.from_env()


def test_stop_deadline_must_fit_stop_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SDM_STOP_RETRIES", "1")
    monkeypatch.setenv("SDM_STOP_TIMEOUT_SECONDS", "60")

    with pytest.raises(ValueError, match="SDM_STOP_AFTER_MINUTES"):
        RuntimeSettings.from_env()


def test_dns_api_base_must_be_http_url() -> None:
    with pytest.raises(ValueError, match="SDM_DNS_API_BASE"):
        RuntimeSettings(dns_api_base="dns-api.org").normalized()


def test_state_store_path_resolves_relative_roots(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/ignored")) == absolute


def test_ensure_kube_token_reads_dotenv(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("SDM_KUBE_TOKEN=from-dotenv\n", encoding="utf-8")

    assert ensure_kube_token(tmp_path) == "from-dotenv"


def test_ensure_kube_token_requires_a_token(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="SDM_KUBE_TOKEN"):
        ensure_kube_token(tmp_path)


def test_recursion_limit_bounds(monkeypatch: pytest.MonkeyPatch) -> None:
    assert RuntimeSettings.from_env().recursion_limit == 1_000

    monkeypatch.setenv("SDM_RECURSION_LIMIT", "10")
    with pytest.raises(ValueError, match=">= 100"):
        RuntimeSettings.from_env()

    monkeypatch.setenv("SDM_RECURSION_LIMIT", "200000")
    with pytest.raises(ValueError, match="<= 100000"):
        RuntimeSettings.from_env()
