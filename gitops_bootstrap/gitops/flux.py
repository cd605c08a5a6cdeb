"""Flux implementation of the GitOps backend.

Flux has no Application/ApplicationSet; a Kustomization (or a HelmRelease
for chart entries) plays the role of an application and a parent
Kustomization that emits child Kustomizations plays the role of the
generator. Sync/health are derived from the Ready condition, which both
kinds report the same way.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from gitops_bootstrap.descriptors import SourceItem
from gitops_bootstrap.errors import TransientNotReady
from gitops_bootstrap.gitops.backend import (
    GitOpsBackend,
    HealthState,
    ReconciliationStatus,
    SyncState,
)
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.flux")

SOURCE_API = "source.toolkit.fluxcd.io/v1"
KUSTOMIZE_API = "kustomize.toolkit.fluxcd.io/v1"
HELM_API = "helm.toolkit.fluxcd.io/v2"
INSTALL_URL = "https://github.com/fluxcd/flux2/releases/latest/download/install.yaml"
CONTROLLER_DEPLOYMENTS = [
    "source-controller",
    "kustomize-controller",
    "helm-controller",
    "notification-controller",
]
SOURCE_NAME = "flux-system"
RECONCILE_ANNOTATION = "reconcile.fluxcd.io/requestedAt"
COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
TAG_RE = re.compile(r"^v?\d+(\.\d+)*([-+].*)?$")

# Ready=False reasons that mean "still working", not "broken"
PROGRESSING_REASONS = {"Progressing", "DependencyNotReady", "ProgressingWithRetry"}


def _ready_condition(obj: dict) -> Optional[dict]:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond
    return None


def kustomization_status(obj: dict) -> ReconciliationStatus:
    """Map a Kustomization or HelmRelease Ready condition onto sync/health."""
    generation = (obj.get("metadata") or {}).get("generation")
    observed = (obj.get("status") or {}).get("observedGeneration")
    cond = _ready_condition(obj)

    if cond is None:
        return ReconciliationStatus(SyncState.UNKNOWN, HealthState.UNKNOWN)
    if generation is not None and observed != generation:
        return ReconciliationStatus(SyncState.OUT_OF_SYNC, HealthState.PROGRESSING)

    status, reason = cond.get("status"), cond.get("reason", "")
    if status == "True":
        return ReconciliationStatus(SyncState.SYNCED, HealthState.HEALTHY)
    if status == "Unknown" or reason in PROGRESSING_REASONS:
        return ReconciliationStatus(SyncState.OUT_OF_SYNC, HealthState.PROGRESSING)
    if reason == "HealthCheckFailed":
        return ReconciliationStatus(SyncState.SYNCED, HealthState.DEGRADED)
    return ReconciliationStatus(SyncState.OUT_OF_SYNC, HealthState.DEGRADED)


class FluxBackend(GitOpsBackend):
    name = "flux"
    namespace = "flux-system"
    manifest_dir = "local-cluster/flux"

    def install(self) -> None:
        log.info("=== Installing Flux ===")
        self._kubectl_apply(INSTALL_URL)
        self._wait_deployments(CONTROLLER_DEPLOYMENTS, self.cfg.deploy_timeout)
        log.info("✓ Flux controllers installed")

    def register_source(self, repo_url: str, branch: str) -> None:
        self.kube.server_side_apply(
            {
                "apiVersion": SOURCE_API,
                "kind": "GitRepository",
                "metadata": {"name": SOURCE_NAME, "namespace": self.namespace},
                "spec": {"interval": "1m", "url": repo_url, "ref": {"branch": branch}},
            },
            field_manager="gitops-bootstrap",
        )
        log.info("  ✓ GitRepository %s → %s@%s", SOURCE_NAME, repo_url, branch)

    def _kustomization(self, name: str) -> Optional[dict]:
        return self.kube.get(KUSTOMIZE_API, "Kustomization", name, self.namespace)

    def _application(self, name: str) -> Optional[dict]:
        obj = self._kustomization(name)
        if obj is None:
            obj = self.kube.get(HELM_API, "HelmRelease", name, self.namespace)
        return obj

    def status(self, name: str) -> ReconciliationStatus:
        obj = self._application(name)
        if obj is None:
            raise TransientNotReady(f"kustomization or helmrelease/{name} not created yet")
        return kustomization_status(obj)

    def describe(self, name: str) -> str:
        return self._dump(self._application(name))

    def describe_generator(self, name: str) -> str:
        return self._dump(self._kustomization(name))

    def generator_exists(self, name: str) -> bool:
        return self._kustomization(name) is not None

    def generator_up_to_date(self, name: str) -> tuple[bool, str]:
        obj = self._kustomization(name)
        if obj is None:
            raise TransientNotReady(f"kustomization/{name} not created yet")
        cond = _ready_condition(obj) or {}
        return cond.get("status") == "True", cond.get("message", "no Ready condition yet")

    def refresh_source(self, timeout: float) -> None:
        log.info("  → Requesting Flux source reconciliation...")
        requested_at = datetime.now(timezone.utc).isoformat()
        self.kube.patch(
            SOURCE_API, "GitRepository", SOURCE_NAME, self.namespace,
            {"metadata": {"annotations": {RECONCILE_ANNOTATION: requested_at}}},
        )

        def handled():
            repo = self.kube.get(SOURCE_API, "GitRepository", SOURCE_NAME, self.namespace)
            if repo is None:
                raise TransientNotReady(f"gitrepository/{SOURCE_NAME} missing")
            seen = (repo.get("status") or {}).get("lastHandledReconcileAt")
            return ready(seen) if seen == requested_at else not_ready(seen)

        wait_until(
            handled,
            WaitSpec(f"gitrepository/{SOURCE_NAME} reconcile", self.cfg.poll_interval, timeout),
            sleep=self._sleep, clock=self._clock,
        )
        log.info("  ✓ Flux source refreshed")

    def _source_url(self) -> str:
        repo = self.kube.get(SOURCE_API, "GitRepository", SOURCE_NAME, self.namespace)
        return ((repo or {}).get("spec") or {}).get("url") or self.cfg.repo_url

    def source_manifest(self, item: SourceItem) -> Optional[dict]:
        """HelmRepository for chart entries, GitRepository for external repos."""
        metadata = {"name": item.name, "namespace": self.namespace}
        if item.registry:
            spec = {"interval": "1h", "url": item.registry}
            if item.registry.startswith("oci://"):
                spec["type"] = "oci"
            return {"apiVersion": SOURCE_API, "kind": "HelmRepository", "metadata": metadata, "spec": spec}
        if item.repo and item.repo != self._source_url():
            return {
                "apiVersion": SOURCE_API,
                "kind": "GitRepository",
                "metadata": metadata,
                "spec": {"interval": "5m", "url": item.repo, "ref": git_ref(item.revision)},
            }
        return None

    def application_manifest(self, item: SourceItem) -> dict:
        metadata = {"name": item.name, "namespace": self.namespace}
        if item.registry:
            chart = {
                "chart": item.name,
                "sourceRef": {"kind": "HelmRepository", "name": item.name},
            }
            if item.revision != "HEAD":
                chart["version"] = item.revision
            return {
                "apiVersion": HELM_API,
                "kind": "HelmRelease",
                "metadata": metadata,
                "spec": {
                    "interval": "5m",
                    "targetNamespace": item.namespace,
                    "install": {"createNamespace": True},
                    "chart": {"spec": chart},
                },
            }

        if item.repo and item.repo != self._source_url():
            source, path = item.name, item.path or "./"
        else:
            source, path = SOURCE_NAME, item.path or f"./local-cluster/flux/{item.name}"
        return {
            "apiVersion": KUSTOMIZE_API,
            "kind": "Kustomization",
            "metadata": metadata,
            "spec": {
                "interval": "5m",
                "path": path,
                "prune": True,
                "wait": True,
                "targetNamespace": item.namespace,
                "sourceRef": {"kind": "GitRepository", "name": source},
            },
        }


def git_ref(revision: str) -> dict:
    """GitRepository .spec.ref for a revision string."""
    if revision in ("", "HEAD"):
        return {"branch": "main"}
    if COMMIT_RE.match(revision):
        return {"commit": revision}
    if TAG_RE.match(revision):
        return {"tag": revision}
    return {"branch": revision}
