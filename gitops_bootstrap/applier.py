"""Idempotent resource applier.

Applies desired-state objects with server-side apply, so re-applying an
unchanged manifest is a no-op on the cluster, and reports whether the call
created, updated or left the object alone.
"""

from __future__ import annotations

import enum
import logging
import string
import time
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

import yaml

from gitops_bootstrap.errors import FatalError, RetriableInfraError
from gitops_bootstrap.poller import Observation, WaitSpec, ready, wait_until

log = logging.getLogger("gitops-bootstrap.applier")

FIELD_MANAGER = "gitops-bootstrap"


class ApplyOutcome(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def object_ref(desired: Mapping) -> str:
    metadata = desired.get("metadata") or {}
    ref = f"{desired.get('kind', '?')}/{metadata.get('name', '?')}"
    if metadata.get("namespace"):
        ref += f" -n {metadata['namespace']}"
    return ref


def validate_manifest(desired: Mapping) -> None:
    """Reject descriptors the API server could never accept."""
    if not isinstance(desired, Mapping):
        raise FatalError(f"Manifest must be a mapping, got {type(desired).__name__}")
    missing = [k for k in ("apiVersion", "kind") if not desired.get(k)]
    if not (desired.get("metadata") or {}).get("name"):
        missing.append("metadata.name")
    if missing:
        raise FatalError(f"Malformed manifest {object_ref(desired)}: missing {', '.join(missing)}")


def load_manifests(path: Path, substitutions: Optional[Mapping[str, str]] = None) -> list[dict]:
    """Read a multi-document YAML file, substituting ${VAR} placeholders."""
    text = Path(path).read_text(encoding="utf-8")
    if substitutions:
        text = string.Template(text).safe_substitute(substitutions)
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc]
    except yaml.YAMLError as exc:
        raise FatalError(f"Cannot parse {path}: {exc}") from exc
    for doc in documents:
        validate_manifest(doc)
    return documents


class ResourceApplier:
    """Create-or-merge desired state; retry only what is retriable."""

    def __init__(
        self,
        kube,
        *,
        field_manager: str = FIELD_MANAGER,
        retries: int = 4,
        backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kube = kube
        self.field_manager = field_manager
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._clock = clock

    def apply(self, desired: Mapping) -> ApplyOutcome:
        """
        Apply one object.

        Raises:
            FatalError: Malformed manifest or a non-retriable API rejection.
            RetriableInfraError: Contention persisted through every retry.
            TransientNotReady: The object's kind is not served (CRD missing).
        """
        validate_manifest(desired)
        ref = object_ref(desired)
        metadata = desired["metadata"]

        attempt = 0
        while True:
            attempt += 1
            try:
                before = self.kube.get(
                    desired["apiVersion"], desired["kind"],
                    metadata["name"], metadata.get("namespace"),
                )
                after = self.kube.server_side_apply(dict(desired), field_manager=self.field_manager)
                break
            except RetriableInfraError as exc:
                if attempt > self.retries:
                    log.error("  ✗ %s: giving up after %d attempts", ref, attempt)
                    raise
                delay = self.backoff * 2 ** (attempt - 1)
                log.warning("  ⚠ %s: %s, retrying in %.1fs (%d/%d)", ref, exc, delay, attempt, self.retries)
                self._sleep(delay)

        outcome = _classify(before, after)
        log.info("  ✓ %s %s", ref, outcome.value)
        return outcome

    def apply_all(self, documents: Iterable[Mapping]) -> list[ApplyOutcome]:
        return [self.apply(doc) for doc in documents]

    def apply_manifest_file(
        self,
        path: Path,
        substitutions: Optional[Mapping[str, str]] = None,
    ) -> dict[str, ApplyOutcome]:
        """Apply every document in a YAML file, in file order."""
        log.info("  → Applying %s", path)
        results: dict[str, ApplyOutcome] = {}
        for doc in load_manifests(path, substitutions):
            results[object_ref(doc)] = self.apply(doc)
        return results

    def apply_until_established(self, desired: Mapping, spec: WaitSpec) -> ApplyOutcome:
        """Apply an object whose kind is installed asynchronously by a controller."""

        def attempt() -> Observation:
            return ready(self.apply(desired))

        return wait_until(attempt, spec, sleep=self._sleep, clock=self._clock)


def _classify(before: Optional[Mapping], after: Optional[Mapping]) -> ApplyOutcome:
    if before is None:
        return ApplyOutcome.CREATED
    old_version = (before.get("metadata") or {}).get("resourceVersion")
    new_version = ((after or {}).get("metadata") or {}).get("resourceVersion")
    if old_version is not None and old_version == new_version:
        return ApplyOutcome.UNCHANGED
    return ApplyOutcome.UPDATED
