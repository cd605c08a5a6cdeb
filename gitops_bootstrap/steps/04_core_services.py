"""
@format
Step 04 — Core Services

Applies the core-services manifest, hands the CA key pair to cert-manager
and distributes the CA certificate as a ``local-ca`` ConfigMap to every
namespace listed in resources/local-ca-namespaces.txt.

Idempotent: server-side apply and secret upserts.
"""

import logging

from gitops_bootstrap.descriptors import load_namespace_list

log = logging.getLogger("gitops-bootstrap.steps")

# =============================================================================
# Configuration
# =============================================================================

CORE_SERVICES = "core-services.yaml"
CERT_MANAGER_NAMESPACE = "cert-manager"
CA_SECRET = "ca-key-pair"
CA_CONFIGMAP = "local-ca"
NAMESPACE_LIST = "resources/local-ca-namespaces.txt"


# =============================================================================
# Logic
# =============================================================================

def distribute_ca(ctx, certificate: str) -> list[str]:
    """Create a local-ca ConfigMap in every listed namespace."""
    path = ctx.cfg.local_or_global(NAMESPACE_LIST)
    if not path.exists():
        log.info("  ℹ No %s — CA not distributed", NAMESPACE_LIST)
        return []

    namespaces = load_namespace_list(path)
    for namespace in namespaces:
        ctx.kube.ensure_namespace(namespace)
        ctx.applier.apply({
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": CA_CONFIGMAP, "namespace": namespace},
            "data": {"CA.cer": certificate},
        })
    return namespaces


# =============================================================================
# Main
# =============================================================================

def main(ctx) -> dict:
    ctx.applier.apply_manifest_file(ctx.backend.manifest_path(CORE_SERVICES), ctx.substitutions())

    ca = ctx.certificate_authority()
    ctx.kube.ensure_namespace(CERT_MANAGER_NAMESPACE)
    ctx.credentials.publish_credential(ca, CA_SECRET, CERT_MANAGER_NAMESPACE)

    namespaces = distribute_ca(ctx, ca["tls.crt"])
    return {"ca_namespaces": namespaces}
