"""
@format
Step 06 — Ingress

Applies the ingress generator and waits until it has produced the
ingress-nginx application and that application is Synced and Healthy.
The ingress cluster IP read in step 07 only exists after this converges.
"""

import logging

log = logging.getLogger("gitops-bootstrap.steps")

GENERATOR = "ingress-appset"
APPLICATION = "ingress-nginx"


def main(ctx) -> dict:
    status = ctx.sequencer.deploy_via_generator(
        GENERATOR,
        APPLICATION,
        manifest=ctx.backend.manifest_path(f"{GENERATOR}.yaml"),
        substitutions=ctx.substitutions(),
    )
    return {APPLICATION: str(status)}
