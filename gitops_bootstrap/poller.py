"""Readiness poller.

Every wait in the bootstrap goes through ``wait_until``: call a predicate,
sleep, repeat, until it reports ready or the budget runs out. Objects are
routinely created asynchronously by other controllers, so "not found" and
brief API failures count as not-yet-ready rather than errors.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gitops_bootstrap.errors import (
    RetriableInfraError,
    TransientNotReady,
    WaitCancelled,
    WaitTimeout,
)

log = logging.getLogger("gitops-bootstrap.poller")


class PollResult(enum.Enum):
    READY = "ready"
    NOT_YET_READY = "not-yet-ready"
    TRANSIENT_ERROR = "transient-error"


@dataclass(frozen=True)
class Observation:
    """One predicate evaluation: the verdict plus whatever was observed."""
    result: PollResult
    state: Any = None


def ready(state: Any = None) -> Observation:
    return Observation(PollResult.READY, state)


def not_ready(state: Any = None) -> Observation:
    return Observation(PollResult.NOT_YET_READY, state)


def transient(state: Any = None) -> Observation:
    return Observation(PollResult.TRANSIENT_ERROR, state)


@dataclass
class WaitSpec:
    """How long and how often to poll. Built per call, never stored."""
    description: str
    interval: float = 5
    timeout: Optional[float] = 300
    on_timeout: Optional[Callable[[], str]] = None


class CancelToken:
    """Lets a predicate (or its caller) abandon a wait early."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None

    def cancel(self, reason: str) -> None:
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self.reason is not None


def wait_until(
    predicate: Callable[[], Observation],
    spec: WaitSpec,
    *,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """
    Poll ``predicate`` until it reports READY.

    Args:
        predicate: Returns an Observation. May raise TransientNotReady or
            RetriableInfraError, which count as not-yet-ready. Any other
            exception propagates unchanged.
        spec: Interval, timeout and diagnostics hook.
        cancel: Checked after every poll; once cancelled the wait stops.

    Returns:
        The ``state`` carried by the READY observation.

    Raises:
        WaitTimeout: Budget exhausted. Carries the last observed state and
            the ``on_timeout`` dump when one is configured.
        WaitCancelled: The token was cancelled.
    """
    start = clock()
    cycles = 0
    last_state: Any = None

    while True:
        cycles += 1
        try:
            observation = predicate()
        except (TransientNotReady, RetriableInfraError) as exc:
            observation = transient(str(exc))

        last_state = observation.state
        if observation.result is PollResult.READY:
            log.debug("  ✓ %s ready after %d poll(s)", spec.description, cycles)
            return observation.state

        if cancel is not None and cancel.cancelled:
            raise WaitCancelled(spec.description, cancel.reason, last_state)

        elapsed = clock() - start
        if spec.timeout is not None and elapsed + spec.interval > spec.timeout:
            diagnostics = None
            if spec.on_timeout is not None:
                diagnostics = spec.on_timeout()
            raise WaitTimeout(
                spec.description,
                elapsed=max(elapsed, spec.timeout),
                cycles=cycles,
                last_state=last_state,
                diagnostics=diagnostics,
            )

        if observation.result is PollResult.TRANSIENT_ERROR:
            log.debug("  … %s not visible yet: %s", spec.description, last_state)
        else:
            log.debug("  … %s not ready: %s", spec.description, last_state)
        sleep(spec.interval)
