"""
@format
Step 08 — Core Appset

With the full cluster parameters in git, applies the core application
generator. The ApplicationSet (or Kustomization) kind is served once the
controller has registered its CRDs, so each object is applied under a poll
that treats an unknown kind as not ready yet.
"""

import logging

from gitops_bootstrap.applier import load_manifests, object_ref
from gitops_bootstrap.poller import WaitSpec

log = logging.getLogger("gitops-bootstrap.steps")

CORE_APPSET = "core-appset.yaml"


def main(ctx) -> dict:
    path = ctx.backend.manifest_path(CORE_APPSET)
    log.info("  → Applying %s", path)
    results = {}
    for doc in load_manifests(path, ctx.substitutions()):
        ref = object_ref(doc)
        spec = WaitSpec(f"{ref} kind served", ctx.cfg.poll_interval, ctx.cfg.deploy_timeout)
        results[ref] = ctx.applier.apply_until_established(doc, spec).value
    return results
