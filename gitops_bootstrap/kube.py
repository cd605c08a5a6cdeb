"""Thin wrapper over the kubernetes client.

Everything the bootstrap needs from the cluster API goes through
``KubeClient``: structured get, server-side apply, merge patch, secret
upsert, pod exec and logs. Client exceptions are translated into the
bootstrap error taxonomy here so callers never inspect HTTP codes.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from kubernetes.stream import stream as k8s_stream
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from gitops_bootstrap.errors import FatalError, RetriableInfraError, TransientNotReady

log = logging.getLogger("gitops-bootstrap.kube")

RETRIABLE_STATUSES = {409, 429, 500, 502, 503, 504}
FATAL_STATUSES = {400, 401, 403, 405, 422}

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


def classify_api_error(exc: Exception, what: str) -> Exception:
    """Map a client exception onto TransientNotReady / Retriable / Fatal."""
    if isinstance(exc, ResourceNotFoundError):
        return TransientNotReady(f"{what}: resource kind not served yet ({exc})")
    if isinstance(exc, Urllib3HTTPError):
        return RetriableInfraError(f"{what}: API unreachable ({exc})")

    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None) or str(exc)
    if status == 404:
        return TransientNotReady(f"{what}: not found")
    if status in RETRIABLE_STATUSES:
        return RetriableInfraError(f"{what}: {status} {reason}")
    if status in FATAL_STATUSES:
        return FatalError(f"{what}: {status} {reason}")
    return FatalError(f"{what}: unexpected API error {status} {reason}")


def _ref(kind: str, name: str, namespace: Optional[str]) -> str:
    return f"{kind}/{name}" + (f" -n {namespace}" if namespace else "")


class KubeClient:
    """Structured access to the cluster API."""

    def __init__(self, api_client: k8s_client.ApiClient):
        self.api_client = api_client
        self.core_v1 = k8s_client.CoreV1Api(api_client)
        self.apps_v1 = k8s_client.AppsV1Api(api_client)
        self.dynamic = DynamicClient(api_client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str, context: str = "") -> "KubeClient":
        try:
            api_client = k8s_config.new_client_from_config(
                config_file=kubeconfig, context=context or None
            )
        except k8s_config.ConfigException as exc:
            raise FatalError(f"Cannot load kubeconfig {kubeconfig}: {exc}") from exc
        return cls(api_client)

    # -------------------------------------------------------------------------
    # Generic objects
    # -------------------------------------------------------------------------
    def _resource(self, api_version: str, kind: str):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Optional[dict]:
        """Return the live object as a dict, or None when it does not exist."""
        what = _ref(kind, name, namespace)
        try:
            resource = self._resource(api_version, kind)
            return resource.get(name=name, namespace=namespace).to_dict()
        except (DynamicApiError, ResourceNotFoundError, Urllib3HTTPError) as exc:
            translated = classify_api_error(exc, what)
            if isinstance(translated, TransientNotReady):
                return None
            raise translated from exc

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict]:
        what = f"{kind} list" + (f" -n {namespace}" if namespace else "")
        try:
            resource = self._resource(api_version, kind)
            result = resource.get(namespace=namespace, label_selector=label_selector)
            return list(result.to_dict().get("items") or [])
        except (DynamicApiError, ResourceNotFoundError, Urllib3HTTPError) as exc:
            raise classify_api_error(exc, what) from exc

    def server_side_apply(self, manifest: dict, *, field_manager: str) -> dict:
        """Server-side apply; creates or merges, never fails on existence."""
        metadata = manifest.get("metadata", {})
        what = _ref(manifest.get("kind", "?"), metadata.get("name", "?"), metadata.get("namespace"))
        try:
            resource = self._resource(manifest["apiVersion"], manifest["kind"])
            applied = self.dynamic.server_side_apply(
                resource,
                body=manifest,
                name=metadata.get("name"),
                namespace=metadata.get("namespace"),
                field_manager=field_manager,
                force_conflicts=True,
            )
            return applied.to_dict()
        except (DynamicApiError, ResourceNotFoundError, Urllib3HTTPError) as exc:
            raise classify_api_error(exc, what) from exc

    def patch(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str],
        patch: dict,
    ) -> dict:
        """JSON merge patch."""
        what = _ref(kind, name, namespace)
        try:
            resource = self._resource(api_version, kind)
            patched = self.dynamic.patch(
                resource,
                body=patch,
                name=name,
                namespace=namespace,
                content_type="application/merge-patch+json",
            )
            return patched.to_dict()
        except (DynamicApiError, ResourceNotFoundError, Urllib3HTTPError) as exc:
            raise classify_api_error(exc, what) from exc

    # -------------------------------------------------------------------------
    # Namespaces, secrets, configmaps
    # -------------------------------------------------------------------------
    def namespace_exists(self, namespace: str) -> bool:
        return self.get("v1", "Namespace", namespace) is not None

    def ensure_namespace(self, namespace: str) -> bool:
        """Create the namespace if it doesn't exist. Returns True if created."""
        try:
            self.core_v1.read_namespace(name=namespace)
            return False
        except k8s_client.ApiException as exc:
            if exc.status != 404:
                raise classify_api_error(exc, f"namespace/{namespace}") from exc
        try:
            self.core_v1.create_namespace(
                body=k8s_client.V1Namespace(metadata=k8s_client.V1ObjectMeta(name=namespace))
            )
        except k8s_client.ApiException as exc:
            if exc.status == 409:
                return False
            raise classify_api_error(exc, f"namespace/{namespace}") from exc
        log.info("  ✓ Namespace '%s' created", namespace)
        return True

    def read_secret(self, name: str, namespace: str) -> Optional[dict[str, str]]:
        """Decoded secret data, or None if the secret does not exist."""
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except k8s_client.ApiException as exc:
            if exc.status == 404:
                return None
            raise classify_api_error(exc, f"secret/{name} -n {namespace}") from exc
        return {
            k: base64.b64decode(v).decode() for k, v in (secret.data or {}).items()
        }

    def upsert_secret(
        self,
        name: str,
        namespace: str,
        data: dict[str, str],
        *,
        labels: Optional[dict[str, str]] = None,
        secret_type: str = "Opaque",
    ) -> None:
        """Create or replace a Kubernetes Secret (idempotent)."""
        encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        secret = k8s_client.V1Secret(
            metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            type=secret_type,
            data=encoded,
        )
        try:
            self.core_v1.create_namespaced_secret(namespace=namespace, body=secret)
        except k8s_client.ApiException as exc:
            if exc.status != 409:
                raise classify_api_error(exc, f"secret/{name} -n {namespace}") from exc
            try:
                self.core_v1.replace_namespaced_secret(name=name, namespace=namespace, body=secret)
            except k8s_client.ApiException as exc2:
                raise classify_api_error(exc2, f"secret/{name} -n {namespace}") from exc2

    # -------------------------------------------------------------------------
    # Workloads
    # -------------------------------------------------------------------------
    def deployment_available(self, name: str, namespace: str) -> tuple[bool, str]:
        """Rollout complete and every replica available (kubectl rollout status)."""
        dep = self.get("apps/v1", "Deployment", name, namespace)
        if dep is None:
            raise TransientNotReady(f"deployment/{name} -n {namespace}: not found")
        spec = dep.get("spec", {})
        status = dep.get("status", {})
        desired = spec.get("replicas", 1)
        generation = dep.get("metadata", {}).get("generation", 0)
        observed = status.get("observedGeneration", 0)
        updated = status.get("updatedReplicas", 0)
        available = status.get("availableReplicas", 0)
        summary = f"{available}/{desired} available, {updated} updated, generation {observed}/{generation}"
        ok = observed >= generation and updated >= desired and available >= desired
        return ok, summary

    def restart_deployment(self, name: str, namespace: str) -> str:
        """Equivalent of `kubectl rollout restart`. Returns the restart stamp."""
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.patch(
            "apps/v1", "Deployment", name, namespace,
            {"spec": {"template": {"metadata": {"annotations": {RESTARTED_AT_ANNOTATION: stamp}}}}},
        )
        log.info("  → Restarted deployment/%s -n %s", name, namespace)
        return stamp

    def exec_in_pod(
        self,
        name: str,
        namespace: str,
        command: list[str],
        container: Optional[str] = None,
        stdin: Optional[str] = None,
    ) -> str:
        """Run a command inside a pod and return its combined output.

        ``stdin`` is written to the process before output is collected.
        """
        kwargs: dict[str, Any] = {}
        if container:
            kwargs["container"] = container
        try:
            if stdin is None:
                return k8s_stream(
                    self.core_v1.connect_get_namespaced_pod_exec,
                    name,
                    namespace,
                    command=command,
                    stderr=True,
                    stdin=False,
                    stdout=True,
                    tty=False,
                    **kwargs,
                )
            resp = k8s_stream(
                self.core_v1.connect_get_namespaced_pod_exec,
                name,
                namespace,
                command=command,
                stderr=True,
                stdin=True,
                stdout=True,
                tty=False,
                _preload_content=False,
                **kwargs,
            )
            output = []
            try:
                resp.write_stdin(stdin)
                while resp.is_open():
                    resp.update(timeout=1)
                    if resp.peek_stdout():
                        output.append(resp.read_stdout())
                    if resp.peek_stderr():
                        output.append(resp.read_stderr())
            finally:
                resp.close()
            return "".join(output)
        except k8s_client.ApiException as exc:
            raise classify_api_error(exc, f"pod/{name} -n {namespace} exec") from exc

    def read_pod_log(
        self,
        name: str,
        namespace: str,
        container: str,
        tail_lines: int = 1000,
    ) -> str:
        try:
            return self.core_v1.read_namespaced_pod_log(
                name=name, namespace=namespace, container=container, tail_lines=tail_lines
            )
        except k8s_client.ApiException as exc:
            raise classify_api_error(exc, f"pod/{name} -n {namespace} logs") from exc
