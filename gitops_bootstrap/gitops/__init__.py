"""GitOps controller backends and the deployment sequencer."""

from gitops_bootstrap.gitops.argocd import ArgoCDBackend
from gitops_bootstrap.gitops.backend import (
    GitOpsBackend,
    HealthState,
    ReconciliationStatus,
    SyncState,
)
from gitops_bootstrap.gitops.flux import FluxBackend
from gitops_bootstrap.gitops.sequencer import DeploymentSequencer

BACKENDS = {
    "argocd": ArgoCDBackend,
    "flux": FluxBackend,
}


def build_backend(kube, cfg, **kwargs) -> GitOpsBackend:
    return BACKENDS[cfg.backend](kube, cfg, **kwargs)


__all__ = [
    "ArgoCDBackend",
    "BACKENDS",
    "DeploymentSequencer",
    "FluxBackend",
    "GitOpsBackend",
    "HealthState",
    "ReconciliationStatus",
    "SyncState",
    "build_backend",
]
