"""GitOps deployment sequencer.

Per descriptor:

    NotSubmitted -> Submitted -> {OutOfSync | Progressing} -> Synced & Healthy
                                                   \\-> TimedOut (from any non-terminal state)

Only Synced + Healthy ends a wait successfully. Degraded or Missing are
observed, logged and polled past; if they persist the wait times out with a
describe dump of the object.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Mapping, Optional

from gitops_bootstrap.applier import ResourceApplier, load_manifests
from gitops_bootstrap.descriptors import DeploymentDescriptor
from gitops_bootstrap.errors import DeploymentTimeout, TransientNotReady, WaitTimeout
from gitops_bootstrap.gitops.backend import GitOpsBackend, ReconciliationStatus
from gitops_bootstrap.poller import WaitSpec, not_ready, ready, wait_until

log = logging.getLogger("gitops-bootstrap.sequencer")


class DeploymentSequencer:
    """Submit descriptors and block until the controller reports convergence."""

    def __init__(
        self,
        applier: ResourceApplier,
        backend: GitOpsBackend,
        *,
        interval: float = 5,
        timeout: float = 300,
        generator_timeout: float = 120,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.applier = applier
        self.backend = backend
        self.interval = interval
        self.timeout = timeout
        self.generator_timeout = generator_timeout
        self._sleep = sleep
        self._clock = clock

    def _submit(self, manifest, substitutions: Optional[Mapping[str, str]] = None) -> None:
        if manifest is None:
            return
        if isinstance(manifest, (str, Path)):
            documents = load_manifests(Path(manifest), substitutions)
        elif isinstance(manifest, Mapping):
            documents = [manifest]
        else:
            documents = list(manifest)
        for doc in documents:
            self.applier.apply(doc)

    def deploy(
        self,
        descriptor: DeploymentDescriptor,
        *,
        timeout: Optional[float] = None,
        substitutions: Optional[Mapping[str, str]] = None,
    ) -> ReconciliationStatus:
        """
        Apply a descriptor and wait for Synced/Healthy.

        Raises:
            DeploymentTimeout: Never converged. Carries the last status and a
                describe dump of the application.
        """
        log.info("=== Deploying %s (namespace %s) ===", descriptor.name, descriptor.namespace)
        self._submit(descriptor.manifest, substitutions)
        return self.wait_converged(descriptor.name, timeout=timeout)

    def wait_converged(self, name: str, *, timeout: Optional[float] = None) -> ReconciliationStatus:
        """Wait for an already-submitted application to converge."""
        budget = self.timeout if timeout is None else timeout
        log.info("  → Waiting for the %s application to become healthy...", name)
        last_logged: list[Optional[ReconciliationStatus]] = [None]

        def check():
            status = self.backend.status(name)
            if status != last_logged[0]:
                log.info("  … %s: %s", name, status)
                last_logged[0] = status
            return ready(status) if status.converged else not_ready(status)

        try:
            status = wait_until(
                check,
                WaitSpec(
                    f"application/{name} Synced/Healthy",
                    self.interval,
                    budget,
                    on_timeout=lambda: self.backend.describe(name),
                ),
                sleep=self._sleep,
                clock=self._clock,
            )
        except WaitTimeout as exc:
            log.error("  ✗ Application '%s' is not healthy (last: %s)", name, exc.last_state)
            if exc.diagnostics:
                log.error("--- %s ---\n%s", name, exc.diagnostics)
            raise DeploymentTimeout(
                exc.description,
                elapsed=exc.elapsed,
                cycles=exc.cycles,
                last_state=exc.last_state,
                diagnostics=exc.diagnostics,
            ) from exc

        log.info("  ✓ Application '%s' is healthy.", name)
        return status

    def deploy_via_generator(
        self,
        generator_name: str,
        application_name: str,
        *,
        manifest=None,
        substitutions: Optional[Mapping[str, str]] = None,
    ) -> ReconciliationStatus:
        """
        Converge an application produced by a generator.

        Applies the generator manifest when given, waits for the generator
        object to exist, then for it to report its derived objects up to
        date, then for the generated application to converge.
        """
        log.info("=== Deploying %s via generator %s ===", application_name, generator_name)
        self._submit(manifest, substitutions)

        def exists():
            if not self.backend.generator_exists(generator_name):
                raise TransientNotReady(f"{generator_name} not created yet")
            return ready(True)

        wait_until(
            exists,
            WaitSpec(f"generator/{generator_name} to exist", self.interval, self.generator_timeout),
            sleep=self._sleep, clock=self._clock,
        )

        log.info("  → Waiting for generator %s to generate %s...", generator_name, application_name)

        def up_to_date():
            ok, message = self.backend.generator_up_to_date(generator_name)
            return ready(message) if ok else not_ready(message)

        wait_until(
            up_to_date,
            WaitSpec(
                f"generator/{generator_name} ResourcesUpToDate",
                self.interval,
                self.generator_timeout,
                on_timeout=lambda: self.backend.describe_generator(generator_name),
            ),
            sleep=self._sleep, clock=self._clock,
        )
        log.info("  ✓ Generator '%s' is up to date.", generator_name)

        return self.wait_converged(application_name)
