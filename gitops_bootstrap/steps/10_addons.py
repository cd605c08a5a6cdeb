"""
@format
Step 10 — Add-ons and Applications

Applies the add-on, application and application-generator manifests, then
deploys every entry of the add-on list (local-cluster/config/addons.yaml)
and waits for each to converge.
"""

import dataclasses
import logging

from gitops_bootstrap.descriptors import DeploymentDescriptor, load_descriptor_source

log = logging.getLogger("gitops-bootstrap.steps")

# =============================================================================
# Configuration
# =============================================================================

MANIFESTS = ["addons.yaml", "apps.yaml", "apps-appset.yaml"]
ADDON_LIST = "local-cluster/config/addons.yaml"


# =============================================================================
# Main
# =============================================================================

def main(ctx) -> dict:
    details: dict = {"applied": [], "deployed": []}
    for filename in MANIFESTS:
        path = ctx.backend.manifest_path(filename)
        if not path.exists():
            log.warning("  ⚠ %s not found — skipping", path)
            continue
        ctx.applier.apply_manifest_file(path, ctx.substitutions())
        details["applied"].append(filename)

    source = ctx.cfg.local_or_global(ADDON_LIST)
    if not source.exists():
        return details

    repo_url = ctx.repo_url()
    for item in load_descriptor_source(source):
        if not item.repo and not item.registry:
            item = dataclasses.replace(item, repo=repo_url)
        source = ctx.backend.source_manifest(item)
        descriptor = DeploymentDescriptor(
            name=item.name,
            namespace=item.namespace,
            manifest=[m for m in (source, ctx.backend.application_manifest(item)) if m],
        )
        status = ctx.sequencer.deploy(descriptor)
        details["deployed"].append(f"{item.name}={status}")
    return details
