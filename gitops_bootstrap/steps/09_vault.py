"""
@format
Step 09 — Vault

Waits for the vault pod, initialises it on first run, unseals it on every
run and publishes the root token as secret vault/vault-token. Then mounts
the KV engine, loads seed secrets from resources/secrets and restarts
external-secrets so it picks up the token.

Idempotent: init runs once per vault lifetime; unseal is a no-op when
already unsealed; secret writes overwrite.
"""

import logging

log = logging.getLogger("gitops-bootstrap.steps")

EXTERNAL_SECRETS = "external-secrets"


def main(ctx) -> dict:
    state = ctx.vault.bootstrap()
    ctx.vault.ensure_kv_engine()
    loaded = ctx.vault.load_secrets(ctx.cfg.secrets_dir)
    ctx.kube.restart_deployment(EXTERNAL_SECRETS, EXTERNAL_SECRETS)
    return {"vault": state.value, "secrets_loaded": loaded}
