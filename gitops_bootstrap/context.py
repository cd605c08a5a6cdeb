"""Run context shared by the bootstrap steps.

Holds the explicit configuration, the collaborators built from it, and the
only state the orchestrator owns: the in-memory run position (parameters
discovered so far, the CA). Everything durable lives in the cluster, the
vault, the credential store and git.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from gitops_bootstrap.applier import ResourceApplier
from gitops_bootstrap.config import Config
from gitops_bootstrap.credentials import (
    Credential,
    CredentialProvisioner,
    CredentialStore,
    build_store,
    openssl_ca_generator,
)
from gitops_bootstrap.gitops import DeploymentSequencer, GitOpsBackend, build_backend
from gitops_bootstrap.kube import KubeClient
from gitops_bootstrap.publisher import (
    PARAMS_PATH,
    ClusterParameters,
    ConfigPublisher,
    GitRepository,
    PublishOutcome,
)
from gitops_bootstrap.vault import VaultDriver

log = logging.getLogger("gitops-bootstrap.context")

CA_IDENTITY = "ca"
CA_COMMON_NAME = "gitops-bootstrap local CA"


@dataclass
class BootstrapContext:
    cfg: Config
    kube: KubeClient
    applier: ResourceApplier
    backend: GitOpsBackend
    sequencer: DeploymentSequencer
    store: CredentialStore
    credentials: CredentialProvisioner
    repo: GitRepository
    publisher: ConfigPublisher
    vault: VaultDriver
    params: ClusterParameters
    ca: Optional[Credential] = None
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    def repo_url(self) -> str:
        """URL the controller pulls from: GITOPS_REPO_URL, else the git remote."""
        return self.cfg.repo_url or self.repo.remote_url()

    def certificate_authority(self) -> Credential:
        """The environment CA, generated on first use and reused afterwards."""
        if self.ca is None:
            self.ca = self.credentials.ensure_credential(
                CA_IDENTITY, openssl_ca_generator(CA_COMMON_NAME)
            )
        return self.ca

    def substitutions(self) -> dict[str, str]:
        """${VAR} values available to repo manifests."""
        values = {
            "LOCAL_DNS": self.params.dns_suffix,
            "STORAGE_CLASS": self.params.storage_class,
        }
        if self.params.cluster_ip:
            values["CLUSTER_IP"] = self.params.cluster_ip
        return values

    def publish_and_refresh(self, files: Mapping[str, str], message: str) -> PublishOutcome:
        """Publish to git and, if a commit was made, make the controller see it."""
        outcome = self.publisher.publish(files, message)
        if outcome is PublishOutcome.COMMITTED:
            self.backend.refresh_source(self.cfg.refresh_timeout)
        return outcome

    def publish_params(self, message: str) -> PublishOutcome:
        return self.publish_and_refresh({PARAMS_PATH: self.params.render()}, message)


def build_context(cfg: Config, kube: Optional[KubeClient] = None) -> BootstrapContext:
    """Wire every collaborator from one explicit Config."""
    kube = kube or KubeClient.from_kubeconfig(cfg.kubeconfig, cfg.kube_context)
    applier = ResourceApplier(kube)
    backend = build_backend(kube, cfg)
    sequencer = DeploymentSequencer(
        applier, backend,
        interval=cfg.poll_interval,
        timeout=cfg.deploy_timeout,
        generator_timeout=cfg.generator_timeout,
    )
    store = build_store(cfg)
    credentials = CredentialProvisioner(
        store, kube, interval=cfg.poll_interval, timeout=cfg.cluster_timeout
    )
    repo = GitRepository(cfg.repo_dir, remote=cfg.git_remote, branch=cfg.git_branch)
    log.debug("Context built for backend %s, repo %s", backend.name, cfg.repo_dir)
    return BootstrapContext(
        cfg=cfg,
        kube=kube,
        applier=applier,
        backend=backend,
        sequencer=sequencer,
        store=store,
        credentials=credentials,
        repo=repo,
        publisher=ConfigPublisher(repo),
        vault=VaultDriver(kube, store, credentials, cfg),
        params=ClusterParameters(dns_suffix=cfg.dns_suffix, storage_class=cfg.storage_class),
    )
