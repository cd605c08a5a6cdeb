"""GitOps controller capability interface.

The bootstrap sequence is written once against ``GitOpsBackend``; ArgoCD and
Flux supply the controller-specific parts (install, status fields, source
refresh, descriptor shape).
"""

from __future__ import annotations

import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import yaml

from gitops_bootstrap.common import run_cmd
from gitops_bootstrap.descriptors import SourceItem
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.gitops")


class SyncState(enum.Enum):
    UNKNOWN = "Unknown"
    OUT_OF_SYNC = "OutOfSync"
    SYNCED = "Synced"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SyncState":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


class HealthState(enum.Enum):
    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    MISSING = "Missing"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HealthState":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class ReconciliationStatus:
    """Point-in-time sync/health snapshot of one GitOps application."""
    sync: SyncState = SyncState.UNKNOWN
    health: HealthState = HealthState.UNKNOWN

    @property
    def converged(self) -> bool:
        return self.sync is SyncState.SYNCED and self.health is HealthState.HEALTHY

    def __str__(self) -> str:
        return f"{self.sync.value}/{self.health.value}"


class GitOpsBackend(ABC):
    """What the sequencer needs from a GitOps controller."""

    name: str = ""
    namespace: str = ""
    # Repo directory holding this controller's manifests (appsets, apps)
    manifest_dir: str = "local-cluster"

    def __init__(
        self,
        kube,
        cfg,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kube = kube
        self.cfg = cfg
        self._sleep = sleep
        self._clock = clock

    # -- install ---------------------------------------------------------------
    @abstractmethod
    def install(self) -> None:
        """Install the controller and wait until it serves requests."""

    @abstractmethod
    def register_source(self, repo_url: str, branch: str) -> None:
        """Point the controller at the configuration repository."""

    def admin_password(self, provisioner) -> Optional[str]:
        """Initial admin password generated by the controller, if it has one."""
        return None

    # -- reconciliation ----------------------------------------------------------
    @abstractmethod
    def status(self, name: str) -> ReconciliationStatus:
        """Current status. Raises TransientNotReady if the object is absent."""

    @abstractmethod
    def describe(self, name: str) -> str:
        """Human-readable dump of the live object, for timeout diagnostics."""

    @abstractmethod
    def describe_generator(self, name: str) -> str:
        """Dump of the live generator object, for timeout diagnostics."""

    @abstractmethod
    def generator_exists(self, name: str) -> bool:
        """The generator (ApplicationSet / parent Kustomization) is present."""

    @abstractmethod
    def generator_up_to_date(self, name: str) -> tuple[bool, str]:
        """The generator reports its derived objects as current."""

    @abstractmethod
    def refresh_source(self, timeout: float) -> None:
        """Force the controller to re-read git and wait until it has."""

    @abstractmethod
    def application_manifest(self, item: SourceItem) -> dict:
        """Descriptor for one add-on/app list entry."""

    def source_manifest(self, item: SourceItem) -> Optional[dict]:
        """Source object the entry's descriptor depends on, if the controller needs one."""
        return None

    # -- shared helpers ----------------------------------------------------------
    def manifest_path(self, filename: str):
        """Repo-local (or CONFIG_DIR) path of one of this controller's manifests."""
        return self.cfg.local_or_global(f"{self.manifest_dir}/{filename}")

    def _kubectl_apply(self, source: str, namespace: Optional[str] = None) -> None:
        """Server-side apply of a remote install manifest through kubectl.

        --server-side: controller CRDs exceed the 262KB annotation limit of
        client-side apply. --force-conflicts: take ownership on re-apply.
        """
        cmd = ["kubectl", "--kubeconfig", self.cfg.kubeconfig]
        if self.cfg.kube_context:
            cmd += ["--context", self.cfg.kube_context]
        cmd += ["apply", "--server-side", "--force-conflicts", "-f", source]
        if namespace:
            cmd += ["-n", namespace]
        run_cmd(cmd, timeout=600)

    def _wait_deployments(self, names: list[str], timeout: float) -> None:
        for name in names:
            log.info("  → Waiting for deployment/%s...", name)

            def check(name=name):
                ok, summary = self.kube.deployment_available(name, self.namespace)
                return ready(summary) if ok else not_ready(summary)

            summary = wait_until(
                check,
                WaitSpec(f"deployment/{name} -n {self.namespace}",
                         self.cfg.poll_interval, timeout),
                sleep=self._sleep, clock=self._clock,
            )
            log.info("  ✓ deployment/%s ready (%s)", name, summary)

    def _dump(self, obj: Optional[dict]) -> str:
        if obj is None:
            return "(object not found)"
        obj = dict(obj)
        (obj.get("metadata") or {}).pop("managedFields", None)
        return yaml.safe_dump(obj, sort_keys=False, default_flow_style=False)
