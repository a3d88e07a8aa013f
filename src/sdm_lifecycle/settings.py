from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    environment: str = "sdm"
    state_store_root: str = "state_store"
    host_domain: str = "g.atomist.com"
    image_pull_secret: str = "sdm-imagepullsecret"
    dns_api_base: str = "https://dns-api.org/"
    verify_retries: int = 60
    verify_timeout_seconds: int = 10
    stop_retries: int = 20
    stop_timeout_seconds: int = 60
    stop_after_minutes: int = 10
    recursion_limit: int = 1_000
    kube_api_server: str = ""
    http_timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            environment=os.getenv("SDM_ENVIRONMENT", "sdm"),
            state_store_root=os.getenv("SDM_STATE_STORE_ROOT", "state_store"),
            host_domain=os.getenv("SDM_HOST_DOMAIN", "g.atomist.com"),
            image_pull_secret=os.getenv("SDM_IMAGE_PULL_SECRET", "sdm-imagepullsecret"),
            dns_api_base=os.getenv("SDM_DNS_API_BASE", "https://dns-api.org/"),
            verify_retries=_get_env_int("SDM_VERIFY_RETRIES", default=60, minimum=0),
            verify_timeout_seconds=_get_env_int("SDM_VERIFY_TIMEOUT_SECONDS", default=10, minimum=1),
            stop_retries=_get_env_int("SDM_STOP_RETRIES", default=20, minimum=0),
            stop_timeout_seconds=_get_env_int("SDM_STOP_TIMEOUT_SECONDS", default=60, minimum=1),
            stop_after_minutes=_get_env_int("SDM_STOP_AFTER_MINUTES", default=10, minimum=0),
            recursion_limit=_get_env_int("SDM_RECURSION_LIMIT", default=1_000, minimum=100),
            kube_api_server=os.getenv("SDM_KUBE_API_SERVER", ""),
            http_timeout_seconds=_get_env_int("SDM_HTTP_TIMEOUT_SECONDS", default=30, minimum=1, maximum=600),
        ).normalized()

    @property
    def is_testing(self) -> bool:
        return "testing" in self.environment

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        environment = self.environment.strip()
        if not environment:
            raise ValueError("SDM_ENVIRONMENT must be non-empty")
        host_domain = self.host_domain.strip().strip(".").lower()
        if not host_domain:
            raise ValueError("SDM_HOST_DOMAIN must be non-empty")
        dns_api_base = self.dns_api_base.strip()
        if not dns_api_base.startswith(("http://", "https://")):
            raise ValueError(f"SDM_DNS_API_BASE must be an http(s) URL, got: {dns_api_base!r}")
        if not self.state_store_root.strip():
            raise ValueError("SDM_STATE_STORE_ROOT must be non-empty")
        if self.recursion_limit > 100_000:
            raise ValueError(f"SDM_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")

        # The teardown deadline and the stop precondition budget bound each other;
        # a deadline beyond the budget could never be reached.
        stop_budget_minutes = self.stop_timeout_seconds * (self.stop_retries + 1) / 60
        if self.stop_after_minutes > stop_budget_minutes:
            raise ValueError(
                "SDM_STOP_AFTER_MINUTES must fit within SDM_STOP_TIMEOUT_SECONDS * (SDM_STOP_RETRIES + 1), "
                f"got {self.stop_after_minutes}m > {stop_budget_minutes:g}m"
            )
        return replace(
            self,
            environment=environment,
            host_domain=host_domain,
            dns_api_base=dns_api_base,
            kube_api_server=self.kube_api_server.strip(),
            image_pull_secret=self.image_pull_secret.strip(),
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def ensure_kube_token(repo_root: Path | None = None) -> str:
    """Load SDM_KUBE_TOKEN from environment or .env and return it.

    Raises:
        RuntimeError: If SDM_KUBE_TOKEN is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    token = os.getenv("SDM_KUBE_TOKEN", "").strip()
    if not token:
        raise RuntimeError("SDM_KUBE_TOKEN is required to talk to the Kubernetes API server")
    return token


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Integer from ``name`` within ``[minimum, maximum]``, or ``default`` when unset."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        bound = f">= {minimum}" if parsed < minimum else f"<= {maximum}"
        raise ValueError(f"{name} must be {bound}, got: {parsed}")
    return parsed
