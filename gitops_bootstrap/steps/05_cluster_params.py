"""
@format
Step 05 — Cluster Parameters

Publishes the DNS suffix and storage class to
local-cluster/config/cluster-params.yaml and, when that produced a commit,
refreshes the controller's view of the repository so later appsets render
with the right values.

An ingress cluster IP published by an earlier run is carried over (from the
live service, else from the committed file) so a re-run does not strip it
and put it back in step 07.

Idempotent: nothing is committed (and nothing refreshed) when unchanged.
"""

import logging

log = logging.getLogger("gitops-bootstrap.steps")

INGRESS_SERVICE = "ingress-nginx-controller"
INGRESS_NAMESPACE = "ingress-nginx"


def known_cluster_ip(ctx):
    svc = ctx.kube.get("v1", "Service", INGRESS_SERVICE, INGRESS_NAMESPACE)
    ip = ((svc or {}).get("spec") or {}).get("clusterIP")
    if ip and ip != "None":
        return ip
    committed = ctx.publisher.committed_params()
    return committed.cluster_ip if committed else None


def main(ctx) -> dict:
    if not ctx.params.cluster_ip:
        ip = known_cluster_ip(ctx)
        if ip:
            log.info("  → Keeping ingress cluster IP %s from the previous run", ip)
            ctx.params.cluster_ip = ip
    outcome = ctx.publish_params("update cluster params with dns suffix")
    return {"dns_suffix": ctx.params.dns_suffix, "publish": outcome.value}
