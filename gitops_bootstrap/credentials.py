"""Secret/credential provisioner.

Long-lived credentials (admin passwords, the CA key pair, vault init
material) are generated once per environment and reused on every later
run. Regenerating one that has already been handed to the cluster would
desynchronise everything that trusts it, so the local record always wins.

Two stores are supported: files outside the git working tree (default) and
SSM Parameter Store SecureStrings for shared environments.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from gitops_bootstrap.common import run_cmd
from gitops_bootstrap.errors import FatalError, RetriableInfraError, TransientNotReady
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.credentials")

THROTTLING_CODES = {"ThrottlingException", "TooManyUpdates", "InternalServerError"}


@dataclass(frozen=True)
class Credential:
    """A generated secret: who it is for, and its key/value material."""
    identity: str
    values: Mapping[str, str] = field(default_factory=dict)

    def __getitem__(self, key: str) -> str:
        return self.values[key]


# =============================================================================
# Stores
# =============================================================================

class CredentialStore(ABC):
    """Durable local record of generated credentials."""

    @abstractmethod
    def load(self, identity: str) -> Optional[Credential]:
        """Return the stored credential, or None if never generated."""

    @abstractmethod
    def save(self, credential: Credential) -> None:
        """Persist (or overwrite) a credential."""


class FileCredentialStore(CredentialStore):
    """One JSON file per identity, readable only by the current user."""

    def __init__(self, directory: Path, *, repo_dir: Optional[Path] = None):
        self.directory = Path(directory).expanduser()
        if repo_dir is not None:
            repo = Path(repo_dir).resolve()
            target = self.directory.resolve()
            if target == repo or repo in target.parents:
                raise FatalError(
                    f"Credential directory {self.directory} is inside the git "
                    f"repository {repo_dir}; credentials must never be committed"
                )

    def _path(self, identity: str) -> Path:
        if not identity or "/" in identity or identity.startswith("."):
            raise FatalError(f"Invalid credential identity {identity!r}")
        return self.directory / f"{identity}.json"

    def load(self, identity: str) -> Optional[Credential]:
        path = self._path(identity)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise FatalError(f"Credential record {path} is corrupt: {exc}") from exc
        return Credential(identity=identity, values=data)

    def save(self, credential: Credential) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)
        path = self._path(credential.identity)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(dict(credential.values), handle, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


class SsmCredentialStore(CredentialStore):
    """SSM Parameter Store SecureStrings under <prefix>/credentials/."""

    def __init__(self, prefix: str, region: str, *, ssm_client=None):
        self.prefix = prefix.rstrip("/")
        self.ssm = ssm_client or boto3.client("ssm", region_name=region)

    def _name(self, identity: str) -> str:
        return f"{self.prefix}/credentials/{identity}"

    def load(self, identity: str) -> Optional[Credential]:
        name = self._name(identity)
        try:
            resp = self.ssm.get_parameter(Name=name, WithDecryption=True)
        except ClientError as exc:
            code = exc.response["Error"]["Code"]
            if code == "ParameterNotFound":
                return None
            raise _translate_ssm_error(exc, name) from exc
        except BotoCoreError as exc:
            raise RetriableInfraError(f"SSM {name}: {exc}") from exc
        return Credential(identity=identity, values=json.loads(resp["Parameter"]["Value"]))

    def save(self, credential: Credential) -> None:
        name = self._name(credential.identity)
        try:
            self.ssm.put_parameter(
                Name=name,
                Value=json.dumps(dict(credential.values)),
                Type="SecureString",
                Overwrite=True,
            )
        except ClientError as exc:
            raise _translate_ssm_error(exc, name) from exc
        except BotoCoreError as exc:
            raise RetriableInfraError(f"SSM {name}: {exc}") from exc


def _translate_ssm_error(exc: ClientError, name: str) -> Exception:
    code = exc.response["Error"]["Code"]
    if code in THROTTLING_CODES:
        return RetriableInfraError(f"SSM {name}: {code}")
    return FatalError(f"SSM {name}: {code}")


# =============================================================================
# Provisioner
# =============================================================================

class CredentialProvisioner:
    """Generate-or-reuse credentials and push them into the cluster."""

    def __init__(self, store: CredentialStore, kube, *, interval: float = 5, timeout: float = 300,
                 sleep=None, clock=None):
        self.store = store
        self.kube = kube
        self.interval = interval
        self.timeout = timeout
        self._wait_kwargs = {k: v for k, v in (("sleep", sleep), ("clock", clock)) if v is not None}

    def ensure_credential(
        self,
        identity: str,
        generator: Callable[[], Mapping[str, str]],
    ) -> Credential:
        """Load ``identity`` from the store, generating and saving it only if absent."""
        existing = self.store.load(identity)
        if existing is not None:
            log.info("  ✓ Credential '%s' already exists — reusing", identity)
            return existing

        log.info("  → Generating credential '%s'", identity)
        values = dict(generator())
        if not values:
            raise FatalError(f"Generator for credential '{identity}' returned nothing")
        credential = Credential(identity=identity, values=values)
        self.store.save(credential)
        log.info("  ✓ Credential '%s' generated and stored", identity)
        return credential

    def publish_credential(
        self,
        credential: Credential,
        secret_name: str,
        namespace: str,
        *,
        keys: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Write a credential into the cluster as a Secret.

        Args:
            keys: Map of secret key → credential key. Defaults to every value
                under its own name.
        """
        data = (
            {secret_key: credential[cred_key] for secret_key, cred_key in keys.items()}
            if keys else dict(credential.values)
        )

        wait_until(
            lambda: ready(namespace) if self.kube.namespace_exists(namespace) else not_ready("absent"),
            WaitSpec(f"namespace/{namespace}", self.interval, self.timeout),
            **self._wait_kwargs,
        )

        self.kube.upsert_secret(secret_name, namespace, data)
        log.info("  ✓ %s published as secret/%s -n %s", credential.identity, secret_name, namespace)

    def read_controller_secret(self, name: str, namespace: str, key: str) -> str:
        """Wait for a controller-created secret and return one decoded key."""
        data = self._wait_for_secret(name, namespace)
        if key not in data:
            raise FatalError(f"secret/{name} -n {namespace} has no key '{key}'")
        return data[key]

    def _wait_for_secret(self, name: str, namespace: str) -> dict[str, str]:
        def check():
            data = self.kube.read_secret(name, namespace)
            if data is None:
                raise TransientNotReady(f"secret/{name} not created yet")
            return ready(data)

        return wait_until(
            check,
            WaitSpec(f"secret/{name} -n {namespace}", self.interval, self.timeout),
            **self._wait_kwargs,
        )


# =============================================================================
# Generators
# =============================================================================

def random_password(length: int = 24) -> dict[str, str]:
    alphabet = string.ascii_letters + string.digits
    return {"password": "".join(secrets.choice(alphabet) for _ in range(length))}


def openssl_ca_generator(common_name: str, *, days: int = 3650) -> Callable[[], dict[str, str]]:
    """Issue a self-signed CA with openssl; returns tls.crt / tls.key."""

    def generate() -> dict[str, str]:
        with tempfile.TemporaryDirectory(prefix="gitops-ca-") as workdir:
            key = Path(workdir) / "CA.key"
            cert = Path(workdir) / "CA.cer"
            run_cmd([
                "openssl", "req", "-x509", "-newkey", "rsa:4096", "-sha256", "-nodes",
                "-days", str(days),
                "-keyout", str(key),
                "-out", str(cert),
                "-subj", f"/CN={common_name}",
                "-addext", "basicConstraints=critical,CA:TRUE",
                "-addext", "keyUsage=critical,keyCertSign,cRLSign",
            ])
            return {"tls.crt": cert.read_text(), "tls.key": key.read_text()}

    return generate


def build_store(cfg) -> CredentialStore:
    if cfg.credential_backend == "ssm":
        return SsmCredentialStore(cfg.ssm_prefix, cfg.aws_region)
    return FileCredentialStore(cfg.credentials_dir, repo_dir=cfg.repo_dir)
