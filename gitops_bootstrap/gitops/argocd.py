"""ArgoCD implementation of the GitOps backend."""

from __future__ import annotations

import logging
from typing import Optional

from gitops_bootstrap.descriptors import SourceItem
from gitops_bootstrap.errors import TransientNotReady
from gitops_bootstrap.gitops.backend import (
    GitOpsBackend,
    HealthState,
    ReconciliationStatus,
    SyncState,
)

log = logging.getLogger("gitops-bootstrap.argocd")

ARGO_API = "argoproj.io/v1alpha1"
INSTALL_URL = "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
CONTROLLER_DEPLOYMENTS = [
    "argocd-server",
    "argocd-repo-server",
    "argocd-applicationset-controller",
]
REPO_SERVER = "argocd-repo-server"
REPO_SECRET = "repo-gitops-bootstrap"
INITIAL_ADMIN_SECRET = "argocd-initial-admin-secret"
ADMIN_IDENTITY = "argocd-admin"


class ArgoCDBackend(GitOpsBackend):
    name = "argocd"
    namespace = "argocd"

    def install(self) -> None:
        log.info("=== Installing ArgoCD ===")
        self.kube.ensure_namespace(self.namespace)
        self._kubectl_apply(INSTALL_URL, self.namespace)
        log.info("  → Waiting for argocd controller to start")
        self._wait_deployments(CONTROLLER_DEPLOYMENTS, self.cfg.deploy_timeout)
        log.info("✓ ArgoCD core installed")

    def register_source(self, repo_url: str, branch: str) -> None:
        self.kube.upsert_secret(
            REPO_SECRET,
            self.namespace,
            {"type": "git", "url": repo_url},
            labels={"argocd.argoproj.io/secret-type": "repository"},
        )
        log.info("  ✓ Repository %s registered (apps track %s)", repo_url, branch)

    def admin_password(self, provisioner) -> Optional[str]:
        # Operators delete the initial secret after rotating the password
        if (self.kube.read_secret(INITIAL_ADMIN_SECRET, self.namespace) is None
                and provisioner.store.load(ADMIN_IDENTITY) is not None):
            log.warning("  ⚠ %s is gone; keeping the stored '%s' credential",
                        INITIAL_ADMIN_SECRET, ADMIN_IDENTITY)
            return None
        return provisioner.read_controller_secret(INITIAL_ADMIN_SECRET, self.namespace, "password")

    def _application(self, name: str) -> Optional[dict]:
        return self.kube.get(ARGO_API, "Application", name, self.namespace)

    def status(self, name: str) -> ReconciliationStatus:
        app = self._application(name)
        if app is None:
            raise TransientNotReady(f"application/{name} not created yet")
        status = app.get("status") or {}
        return ReconciliationStatus(
            sync=SyncState.parse((status.get("sync") or {}).get("status")),
            health=HealthState.parse((status.get("health") or {}).get("status")),
        )

    def describe(self, name: str) -> str:
        return self._dump(self._application(name))

    def _appset(self, name: str) -> Optional[dict]:
        return self.kube.get(ARGO_API, "ApplicationSet", name, self.namespace)

    def describe_generator(self, name: str) -> str:
        return self._dump(self._appset(name))

    def generator_exists(self, name: str) -> bool:
        return self._appset(name) is not None

    def generator_up_to_date(self, name: str) -> tuple[bool, str]:
        appset = self._appset(name)
        if appset is None:
            raise TransientNotReady(f"applicationset/{name} not created yet")
        for cond in (appset.get("status") or {}).get("conditions") or []:
            if cond.get("type") == "ResourcesUpToDate":
                return cond.get("status") == "True", cond.get("message", cond.get("reason", ""))
        return False, "no ResourcesUpToDate condition yet"

    def refresh_source(self, timeout: float) -> None:
        log.info("  → Refreshing Argo CD repository cache...")
        self.kube.restart_deployment(REPO_SERVER, self.namespace)
        self._wait_deployments([REPO_SERVER], timeout)

    def application_manifest(self, item: SourceItem) -> dict:
        if item.registry:
            source = {
                "repoURL": item.registry,
                "chart": item.name,
                "targetRevision": item.revision if item.revision != "HEAD" else "*",
            }
        else:
            source = {
                "repoURL": item.repo or self.cfg.repo_url,
                "path": item.path or f"local-cluster/{item.name}",
                "targetRevision": item.revision,
            }
        return {
            "apiVersion": ARGO_API,
            "kind": "Application",
            "metadata": {
                "name": item.name,
                "namespace": self.namespace,
                "finalizers": ["resources-finalizer.argocd.argoproj.io"],
            },
            "spec": {
                "project": "default",
                "source": source,
                "destination": {
                    "server": "https://kubernetes.default.svc",
                    "namespace": item.namespace,
                },
                "syncPolicy": {
                    "automated": {"prune": True, "selfHeal": True},
                    "syncOptions": ["CreateNamespace=true"],
                },
            },
        }
