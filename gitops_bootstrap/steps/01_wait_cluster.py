"""
@format
Step 01 — Wait for Cluster

Blocks until cluster DNS (kube-system/coredns) reports Available. Every
later step depends on in-cluster name resolution.

Idempotent: read-only.
"""

import logging

from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.steps")

# =============================================================================
# Configuration
# =============================================================================

COREDNS = "coredns"
NAMESPACE = "kube-system"


# =============================================================================
# Main
# =============================================================================

def main(ctx) -> dict:
    log.info("  → Waiting for cluster to be ready")

    def check():
        ok, summary = ctx.kube.deployment_available(COREDNS, NAMESPACE)
        return ready(summary) if ok else not_ready(summary)

    summary = wait_until(
        check,
        WaitSpec(f"deployment/{COREDNS} -n {NAMESPACE}",
                 ctx.cfg.poll_interval, ctx.cfg.cluster_timeout),
        sleep=ctx.sleep, clock=ctx.clock,
    )
    log.info("  ✓ CoreDNS available (%s)", summary)
    return {"coredns": summary}
