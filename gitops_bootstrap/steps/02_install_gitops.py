"""
@format
Step 02 — Install GitOps Controller

Installs the selected controller (ArgoCD or Flux), waits for it to serve
requests, points it at the configuration repository and configures the
local clone for rebasing pulls. For ArgoCD the generated admin password is
captured into the credential store.

Idempotent: install manifests are server-side applied, the source
registration is an upsert.
"""

import logging

from gitops_bootstrap.credentials import Credential

log = logging.getLogger("gitops-bootstrap.steps")


def main(ctx) -> dict:
    backend = ctx.backend
    backend.install()

    repo_url = ctx.repo_url()
    backend.register_source(repo_url, ctx.cfg.git_branch)
    ctx.repo.configure_pull_rebase()

    details = {"backend": backend.name, "repo_url": repo_url}

    # Controller-owned: always record the password of the live install
    password = backend.admin_password(ctx.credentials)
    if password:
        identity = f"{backend.name}-admin"
        ctx.store.save(Credential(identity=identity, values={"username": "admin", "password": password}))
        log.info("  ✓ %s admin password stored as '%s'", backend.name, identity)
        details["admin_credential"] = identity

    return details
