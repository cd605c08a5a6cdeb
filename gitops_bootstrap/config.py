"""Bootstrap configuration.

Every value is sourced from the environment once, when ``Config()`` is
constructed in ``main()``. The resulting object is passed explicitly to each
collaborator; nothing below the CLI reads ``os.environ`` afterwards.

Environment overrides:
    KUBECONFIG            — kubeconfig path           (default: ~/.kube/config)
    KUBE_CONTEXT          — kubeconfig context        (optional)
    REPO_DIR              — GitOps repo working tree  (default: cwd)
    CONFIG_DIR            — global fallback for resources (optional)
    CREDENTIALS_DIR       — local credential store    (default: ~/.gitops-bootstrap/credentials)
    CREDENTIAL_BACKEND    — file | ssm                (default: file)
    GITOPS_BACKEND        — argocd | flux             (default: argocd)
    CLUSTER_PROFILE       — local | managed           (default: local)
    LOCAL_DNS             — DNS suffix                (default: per profile)
    STORAGE_CLASS         — storage class             (default: per profile)
    GITOPS_REPO_URL       — repo URL the controller pulls (default: git remote URL)
    GIT_REMOTE / GIT_BRANCH
    POLL_INTERVAL / DEPLOY_TIMEOUT / GENERATOR_TIMEOUT / REFRESH_TIMEOUT
    VAULT_START_TIMEOUT   — vault pod start budget    (default: 600)
    SSM_PREFIX            — SSM path for progress and ssm credentials (optional)
    AWS_REGION            — AWS region                (default: eu-west-1)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from gitops_bootstrap.errors import FatalError

BACKENDS = ("argocd", "flux")
CREDENTIAL_BACKENDS = ("file", "ssm")

# Environment-specific variants of the same step. Selected, never merged.
PROFILES = {
    "local": {"dns_suffix": "kube.local", "storage_class": "standard"},
    "managed": {"dns_suffix": "cluster.internal", "storage_class": "gp3"},
}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise FatalError(f"{name} must be an integer, got {value!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Bootstrap configuration sourced from environment variables."""

    kubeconfig: str = field(
        default_factory=lambda: os.getenv(
            "KUBECONFIG", str(Path.home() / ".kube" / "config")
        )
    )
    kube_context: str = field(default_factory=lambda: os.getenv("KUBE_CONTEXT", ""))
    repo_dir: Path = field(
        default_factory=lambda: Path(os.getenv("REPO_DIR", os.getcwd()))
    )
    config_dir: Optional[Path] = field(
        default_factory=lambda: Path(os.environ["CONFIG_DIR"]) if os.getenv("CONFIG_DIR") else None
    )
    credentials_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv(
                "CREDENTIALS_DIR",
                str(Path.home() / ".gitops-bootstrap" / "credentials"),
            )
        )
    )
    credential_backend: str = field(
        default_factory=lambda: os.getenv("CREDENTIAL_BACKEND", "file")
    )
    status_file: Path = field(
        default_factory=lambda: Path(
            os.getenv("STATUS_FILE", "/tmp/gitops-bootstrap-status.json")
        )
    )
    backend: str = field(default_factory=lambda: os.getenv("GITOPS_BACKEND", "argocd"))
    profile: str = field(default_factory=lambda: os.getenv("CLUSTER_PROFILE", "local"))
    dns_suffix: str = field(default_factory=lambda: os.getenv("LOCAL_DNS", ""))
    storage_class: str = field(default_factory=lambda: os.getenv("STORAGE_CLASS", ""))
    repo_url: str = field(default_factory=lambda: os.getenv("GITOPS_REPO_URL", ""))
    git_remote: str = field(default_factory=lambda: os.getenv("GIT_REMOTE", "origin"))
    git_branch: str = field(default_factory=lambda: os.getenv("GIT_BRANCH", "main"))

    poll_interval: int = field(default_factory=lambda: _env_int("POLL_INTERVAL", 5))
    cluster_timeout: int = field(default_factory=lambda: _env_int("CLUSTER_TIMEOUT", 300))
    deploy_timeout: int = field(default_factory=lambda: _env_int("DEPLOY_TIMEOUT", 300))
    generator_timeout: int = field(default_factory=lambda: _env_int("GENERATOR_TIMEOUT", 120))
    refresh_timeout: int = field(default_factory=lambda: _env_int("REFRESH_TIMEOUT", 120))

    vault_namespace: str = "vault"
    vault_pod: str = "vault-0"
    vault_start_timeout: int = field(
        default_factory=lambda: _env_int("VAULT_START_TIMEOUT", 600)
    )
    vault_key_shares: int = field(default_factory=lambda: _env_int("VAULT_KEY_SHARES", 5))
    vault_key_threshold: int = field(
        default_factory=lambda: _env_int("VAULT_KEY_THRESHOLD", 3)
    )
    vault_tls_skip_verify: bool = field(
        default_factory=lambda: _env_bool("VAULT_TLS_SKIP_VERIFY", True)
    )

    ssm_prefix: str = field(default_factory=lambda: os.getenv("SSM_PREFIX", ""))
    aws_region: str = field(default_factory=lambda: os.getenv("AWS_REGION", "eu-west-1"))

    dry_run: bool = False
    debug: bool = False
    json_logs: bool = field(default_factory=lambda: _env_bool("JSON_LOGS", False))

    def __post_init__(self) -> None:
        self.repo_dir = Path(self.repo_dir)
        self.credentials_dir = Path(self.credentials_dir)
        self.status_file = Path(self.status_file)
        if self.config_dir is not None:
            self.config_dir = Path(self.config_dir)
        defaults = PROFILES.get(self.profile, PROFILES["local"])
        if not self.dns_suffix:
            self.dns_suffix = defaults["dns_suffix"]
        if not self.storage_class:
            self.storage_class = defaults["storage_class"]

    def validate(self) -> None:
        """Reject settings no step can act on."""
        if self.backend not in BACKENDS:
            raise FatalError(f"Unknown GitOps backend {self.backend!r} (expected one of {BACKENDS})")
        if self.profile not in PROFILES:
            raise FatalError(f"Unknown cluster profile {self.profile!r} (expected one of {tuple(PROFILES)})")
        if self.credential_backend not in CREDENTIAL_BACKENDS:
            raise FatalError(f"Unknown credential backend {self.credential_backend!r}")
        if self.credential_backend == "ssm" and not self.ssm_prefix:
            raise FatalError("CREDENTIAL_BACKEND=ssm requires SSM_PREFIX")
        if self.vault_key_threshold > self.vault_key_shares:
            raise FatalError("VAULT_KEY_THRESHOLD cannot exceed VAULT_KEY_SHARES")

    def local_or_global(self, relpath: str) -> Path:
        """Prefer the repo's copy of a resource, fall back to CONFIG_DIR."""
        local = self.repo_dir / relpath
        if local.exists() or self.config_dir is None:
            return local
        return self.config_dir / relpath

    @property
    def secrets_dir(self) -> Path:
        return self.repo_dir / "resources" / "secrets"

    def summary(self) -> dict[str, object]:
        """Values worth printing in --dry-run and banners."""
        return {
            "backend": self.backend,
            "profile": self.profile,
            "kubeconfig": self.kubeconfig,
            "kube_context": self.kube_context or "(current)",
            "repo_dir": str(self.repo_dir),
            "config_dir": str(self.config_dir) if self.config_dir else "(none)",
            "credentials": f"{self.credential_backend}:{self.credentials_dir if self.credential_backend == 'file' else self.ssm_prefix}",
            "dns_suffix": self.dns_suffix,
            "storage_class": self.storage_class,
            "git": f"{self.git_remote}/{self.git_branch}",
            "poll_interval": f"{self.poll_interval}s",
            "deploy_timeout": f"{self.deploy_timeout}s",
            "vault_start_timeout": f"{self.vault_start_timeout}s",
            "ssm_prefix": self.ssm_prefix or "(none)",
        }
