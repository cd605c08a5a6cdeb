"""Vault lifecycle driver.

    PodNotStarted -> PodStarted -> [Uninitialized -> Initialized] -> Sealed
        -> Unsealed -> TokenExtracted -> TokenPublished

Initialisation happens once per vault lifetime: re-running it would mint new
unseal keys that cannot open data sealed under the old ones. Unseal runs on
every bootstrap, because vault reseals whenever its pod restarts. All vault
commands run inside the vault pod through the Kubernetes exec API.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import yaml

from gitops_bootstrap.credentials import Credential, CredentialProvisioner, CredentialStore
from gitops_bootstrap.errors import FatalError, TransientNotReady
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.vault")

INIT_IDENTITY = "vault-init"
TOKEN_SECRET = "vault-token"
TOKEN_KEY = "vault_token"
TOKEN_FROM_STDIN = 'read -r VAULT_TOKEN && export VAULT_TOKEN && exec "$@"'


class VaultState(enum.Enum):
    POD_NOT_STARTED = "PodNotStarted"
    POD_STARTED = "PodStarted"
    UNINITIALIZED = "Uninitialized"
    INITIALIZED = "Initialized"
    SEALED = "Sealed"
    UNSEALED = "Unsealed"
    TOKEN_EXTRACTED = "TokenExtracted"
    TOKEN_PUBLISHED = "TokenPublished"


@dataclass(frozen=True)
class VaultStatus:
    initialized: bool
    sealed: bool
    threshold: int = 0
    progress: int = 0


def _parse_json(output: str, what: str) -> dict:
    """Pull the JSON document out of exec output (stderr is interleaved)."""
    start, end = output.find("{"), output.rfind("}")
    if start == -1 or end < start:
        raise FatalError(f"{what}: expected JSON, got {output.strip()[:200]!r}")
    try:
        return json.loads(output[start:end + 1])
    except json.JSONDecodeError as exc:
        raise FatalError(f"{what}: unparseable JSON ({exc})") from exc


class VaultDriver:
    """Drives one vault pod from started to unsealed with a published token."""

    def __init__(
        self,
        kube,
        store: CredentialStore,
        provisioner: CredentialProvisioner,
        cfg,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kube = kube
        self.store = store
        self.provisioner = provisioner
        self.cfg = cfg
        self.namespace = cfg.vault_namespace
        self.pod = cfg.vault_pod
        self._sleep = sleep
        self._clock = clock
        self.state = VaultState.POD_NOT_STARTED

    # -------------------------------------------------------------------------
    # Command plumbing
    # -------------------------------------------------------------------------
    def _vault(self, *args: str, token: Optional[str] = None) -> str:
        command = ["vault", *args]
        if self.cfg.vault_tls_skip_verify:
            # flags go after the (sub)command words
            first_flag = next((i for i, a in enumerate(command) if a.startswith("-")), len(command))
            command.insert(first_flag, "-tls-skip-verify")
        if token is None:
            return self.kube.exec_in_pod(self.pod, self.namespace, command, container="vault")
        # token travels over stdin so it never shows up in the pod's process list
        command = ["sh", "-c", TOKEN_FROM_STDIN, "vault", *command]
        return self.kube.exec_in_pod(self.pod, self.namespace, command, container="vault",
                                     stdin=f"{token}\n")

    def _advance(self, state: VaultState) -> None:
        log.debug("  vault: %s -> %s", self.state.value, state.value)
        self.state = state

    def status(self) -> VaultStatus:
        data = _parse_json(self._vault("status", "-format=json"), "vault status")
        return VaultStatus(
            initialized=bool(data.get("initialized")),
            sealed=bool(data.get("sealed", True)),
            threshold=int(data.get("t") or 0),
            progress=int(data.get("progress") or 0),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def wait_started(self) -> None:
        """Wait for the vault container to report started=true."""
        log.info("  → Waiting for vault to start")

        def started():
            pod = self.kube.get("v1", "Pod", self.pod, self.namespace)
            if pod is None:
                raise TransientNotReady(f"pod/{self.pod} not created yet")
            statuses = (pod.get("status") or {}).get("containerStatuses") or []
            flag = statuses[0].get("started") if statuses else None
            return ready(flag) if flag is True else not_ready(f"started={flag}")

        wait_until(
            started,
            WaitSpec(f"pod/{self.pod} -n {self.namespace} started",
                     self.cfg.poll_interval, self.cfg.vault_start_timeout),
            sleep=self._sleep, clock=self._clock,
        )
        self._advance(VaultState.POD_STARTED)
        log.info("  ✓ Vault pod started")

    def initialize(self) -> bool:
        """Initialise vault once. Returns False when it already was."""
        if self.status().initialized:
            self._advance(VaultState.INITIALIZED)
            log.info("  ✓ Vault already initialized — skipping")
            return False
        self._advance(VaultState.UNINITIALIZED)

        if self.store.load(INIT_IDENTITY) is not None:
            log.warning("  ⚠ Vault is uninitialized but an init record exists; "
                        "the vault data was reset and the old record is replaced")

        log.info("  → Initializing vault (%d shares, threshold %d)",
                 self.cfg.vault_key_shares, self.cfg.vault_key_threshold)
        data = _parse_json(
            self._vault(
                "operator", "init", "-format=json",
                f"-key-shares={self.cfg.vault_key_shares}",
                f"-key-threshold={self.cfg.vault_key_threshold}",
            ),
            "vault operator init",
        )
        if not data.get("unseal_keys_b64") or not data.get("root_token"):
            raise FatalError("vault operator init returned no keys or root token")

        self.store.save(Credential(
            identity=INIT_IDENTITY,
            values={
                "unseal_keys_b64": json.dumps(data["unseal_keys_b64"]),
                "root_token": data["root_token"],
                "threshold": str(data.get("unseal_threshold", self.cfg.vault_key_threshold)),
            },
        ))
        self._advance(VaultState.INITIALIZED)
        log.info("  ✓ Vault initialized, unseal material stored")
        return True

    def _init_record(self) -> Credential:
        record = self.store.load(INIT_IDENTITY)
        if record is None:
            raise FatalError(
                "Vault is initialized but no local init record exists; "
                "restore the credential store or reset vault"
            )
        return record

    def unseal(self) -> None:
        """Submit threshold key shares. A no-op when vault is already unsealed."""
        current = self.status()
        if not current.initialized:
            raise FatalError("Cannot unseal an uninitialized vault")
        if not current.sealed:
            self._advance(VaultState.UNSEALED)
            log.info("  ✓ Vault already unsealed")
            return
        self._advance(VaultState.SEALED)

        record = self._init_record()
        keys = json.loads(record["unseal_keys_b64"])
        threshold = current.threshold or int(record.values.get("threshold", len(keys)))
        log.info("  → Unsealing vault (%d of %d keys)", threshold, len(keys))

        for key in keys[:threshold]:
            result = _parse_json(self._vault("operator", "unseal", "-format=json", key),
                                 "vault operator unseal")
            if not result.get("sealed", True):
                break

        if self.status().sealed:
            raise FatalError("Vault remains sealed after unseal attempts; "
                             "stored keys do not match this vault")
        self._advance(VaultState.UNSEALED)
        log.info("  ✓ Vault unsealed")

    def root_token(self) -> str:
        return self._init_record()["root_token"]

    def publish_token(self) -> None:
        """Republish the root token as a secret; consumers want the current one."""
        record = self._init_record()
        self._advance(VaultState.TOKEN_EXTRACTED)
        self.provisioner.publish_credential(
            record, TOKEN_SECRET, self.namespace,
            keys={TOKEN_KEY: "root_token"},
        )
        self._advance(VaultState.TOKEN_PUBLISHED)

    def bootstrap(self) -> VaultState:
        self.wait_started()
        self.initialize()
        self.unseal()
        self.publish_token()
        return self.state

    # -------------------------------------------------------------------------
    # Secrets engine and seed secrets
    # -------------------------------------------------------------------------
    def ensure_kv_engine(self, path: str = "secret") -> bool:
        """Enable a kv-v2 engine at ``path`` if it is not mounted. True if enabled."""
        token = self.root_token()
        mounts = _parse_json(self._vault("secrets", "list", "-format=json", token=token),
                             "vault secrets list")
        if f"{path}/" in mounts:
            log.info("  ✓ KV engine already mounted at %s/", path)
            return False
        self._vault("secrets", "enable", f"-path={path}", "kv-v2", token=token)
        log.info("  ✓ KV engine enabled at %s/", path)
        return True

    def load_secrets(self, directory: Path, mount: str = "secret") -> int:
        """Write every <name>.yaml mapping in ``directory`` to <mount>/<name>."""
        directory = Path(directory)
        if not directory.is_dir():
            log.info("  ℹ No secrets directory at %s — skipping", directory)
            return 0

        token = self.root_token()
        count = 0
        for path in sorted(directory.glob("*.yaml")):
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict) or not data:
                raise FatalError(f"{path}: expected a non-empty mapping of key: value")
            pairs = [f"{key}={value}" for key, value in data.items()]
            self._vault("kv", "put", f"-mount={mount}", path.stem, *pairs, token=token)
            log.info("  ✓ %s/%s written (%d keys)", mount, path.stem, len(pairs))
            count += 1
        return count
