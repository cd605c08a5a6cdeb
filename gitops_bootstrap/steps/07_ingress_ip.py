"""
@format
Step 07 — Ingress Cluster IP

Reads the cluster IP of the ingress controller service, republishes the
cluster parameters with it and refreshes the controller source so the
remaining appsets see it.
"""

import logging

from gitops_bootstrap.errors import TransientNotReady
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.steps")

SERVICE = "ingress-nginx-controller"
NAMESPACE = "ingress-nginx"


def read_cluster_ip(ctx) -> str:
    def check():
        svc = ctx.kube.get("v1", "Service", SERVICE, NAMESPACE)
        if svc is None:
            raise TransientNotReady(f"service/{SERVICE} not created yet")
        ip = (svc.get("spec") or {}).get("clusterIP")
        return ready(ip) if ip and ip != "None" else not_ready(ip)

    return wait_until(
        check,
        WaitSpec(f"service/{SERVICE} -n {NAMESPACE} clusterIP",
                 ctx.cfg.poll_interval, ctx.cfg.deploy_timeout),
        sleep=ctx.sleep, clock=ctx.clock,
    )


def main(ctx) -> dict:
    ip = read_cluster_ip(ctx)
    log.info("  ✓ Ingress cluster IP: %s", ip)
    ctx.params.cluster_ip = ip
    outcome = ctx.publish_params("update cluster params with cluster IP")
    return {"cluster_ip": ip, "publish": outcome.value}
