"""
@format
Step 03 — Certificate Authority

Ensures the environment CA exists (generated once with openssl, reused on
every later run) and commits its public certificate to resources/CA.cer so
workloads can trust it. The private key never leaves the credential store.

Idempotent: the CA is reused; the commit only happens when CA.cer differs.
"""

import logging

log = logging.getLogger("gitops-bootstrap.steps")

CA_CERT_PATH = "resources/CA.cer"


def main(ctx) -> dict:
    ca = ctx.certificate_authority()
    outcome = ctx.publisher.publish({CA_CERT_PATH: ca["tls.crt"]}, "add CA certificate")
    return {"ca_certificate": CA_CERT_PATH, "publish": outcome.value}
