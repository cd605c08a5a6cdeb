"""
Error taxonomy for the bootstrap run.

TransientNotReady and RetriableInfraError are recovered locally (polling,
bounded backoff). Everything else propagates to the orchestrator and ends
the run.
"""

from typing import Any, Optional


class BootstrapError(Exception):
    """Base class for all bootstrap failures."""


class TransientNotReady(BootstrapError):
    """Target object is not visible yet (404, CRD not established)."""


class RetriableInfraError(BootstrapError):
    """Network or API contention. Safe to retry with backoff."""


class FatalError(BootstrapError):
    """Malformed input, auth failure, credential mismatch. Never retried."""


class CommandError(FatalError):
    """An external CLI collaborator exited non-zero."""

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()[:500]}" if stderr.strip() else ""
        super().__init__(f"{command!r} failed (exit {returncode}){detail}")


class GitConflictError(FatalError):
    """Push still rejected after one pull-rebase retry."""


class WaitTimeout(BootstrapError):
    """A readiness predicate was never satisfied within its budget."""

    def __init__(
        self,
        description: str,
        *,
        elapsed: float,
        cycles: int,
        last_state: Any = None,
        diagnostics: Optional[str] = None,
    ):
        self.description = description
        self.elapsed = elapsed
        self.cycles = cycles
        self.last_state = last_state
        self.diagnostics = diagnostics
        super().__init__(
            f"Timed out after {elapsed:.0f}s ({cycles} polls) waiting for "
            f"{description}; last state: {last_state!r}"
        )


class DeploymentTimeout(WaitTimeout):
    """A GitOps application never reached Synced/Healthy."""


class WaitCancelled(BootstrapError):
    """A wait was aborted before its timeout."""

    def __init__(self, description: str, reason: str, last_state: Any = None):
        self.description = description
        self.reason = reason
        self.last_state = last_state
        super().__init__(f"Gave up waiting for {description}: {reason}")
