"""
@format
Common utilities for the bootstrap steps.

Provides structured logging, subprocess execution, and step status
reporting used by the orchestrator and every step module.

Usage from a step module:
    from gitops_bootstrap.common import run_cmd, log
"""

import json
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from gitops_bootstrap.errors import CommandError, RetriableInfraError

log = logging.getLogger("gitops-bootstrap")


# =============================================================================
# Structured Logging
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **getattr(record, "fields", {}),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(*, json_output: bool = False, debug: bool = False) -> None:
    """Install a stdout handler on the package logger."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger("gitops-bootstrap")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False


def fields(**kwargs) -> dict:
    """Structured fields for `extra=`, picked up by JsonFormatter."""
    return {"fields": kwargs}


# =============================================================================
# Command Execution
# =============================================================================

@dataclass
class CmdResult:
    """Outcome of one external CLI call (git, kubectl, openssl)."""
    returncode: int
    stdout: str
    stderr: str
    command: str
    duration_seconds: float


def run_cmd(
    cmd: Union[List[str], str],
    *,
    shell: bool = False,
    check: bool = True,
    timeout: int = 300,
    env: Optional[dict] = None,
    cwd: Optional[Union[str, Path]] = None,
    input_text: Optional[str] = None,
    capture: bool = True,
) -> CmdResult:
    """
    Run an external CLI collaborator and time it.

    Args:
        cmd: Command as list of args or string (if shell=True).
        shell: Run through shell interpreter.
        check: Raise CommandError on non-zero exit code.
        timeout: Seconds before killing the process.
        env: Additional environment variables (merged with os.environ).
        cwd: Working directory for the command.
        input_text: Text fed to stdin.
        capture: Capture stdout/stderr (False to stream live).

    Returns:
        CmdResult with exit code, output, and timing.

    Raises:
        CommandError: If check=True and the command fails.
        RetriableInfraError: If the command exceeds its timeout.
    """
    cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
    log.debug("  $ %s", cmd_str)

    merged_env = {**os.environ, **(env or {})}
    start = time.monotonic()

    try:
        result = subprocess.run(
            cmd,
            shell=shell,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=merged_env,
            cwd=cwd,
            input=input_text,
        )
    except subprocess.TimeoutExpired as e:
        log.error("Command timed out after %ss: %s", timeout, cmd_str)
        raise RetriableInfraError(f"{cmd_str!r} timed out after {timeout}s") from e

    duration = time.monotonic() - start

    cmd_result = CmdResult(
        returncode=result.returncode,
        stdout=result.stdout if capture else "",
        stderr=result.stderr if capture else "",
        command=cmd_str,
        duration_seconds=round(duration, 2),
    )

    if result.returncode != 0:
        log.debug(
            "Command failed (exit %d): %s",
            result.returncode, cmd_str,
            extra=fields(duration=cmd_result.duration_seconds,
                         stderr=cmd_result.stderr[:500]),
        )
        if check:
            raise CommandError(cmd_str, result.returncode, cmd_result.stderr)

    return cmd_result


# =============================================================================
# Step Status Reporting
# =============================================================================

@dataclass
class StepStatus:
    """Status of a single bootstrap step."""
    step_name: str
    status: str  # "running", "success", "failed"
    started_at: str = ""
    completed_at: str = ""
    duration_seconds: float = 0.0
    error: str = ""
    details: dict = field(default_factory=dict)


def write_status(status_file: Path, statuses: list[StepStatus]) -> None:
    """Rewrite the JSON status file with every step seen so far."""
    data = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "steps": [asdict(s) for s in statuses],
    }
    status_file.parent.mkdir(parents=True, exist_ok=True)
    status_file.write_text(json.dumps(data, indent=2, default=str))


# =============================================================================
# Step Runner
# =============================================================================

class StepRunner:
    """
    Context manager for running a bootstrap step with timing and status reporting.

    Usage:
        with StepRunner("wait-cluster") as step:
            # ... step logic ...
            step.details["coredns"] = "Available"

        # On success: step.status.status = "success"
        # On exception: step.status.status = "failed", step.status.error = str(exception)
    """

    def __init__(self, step_name: str):
        self.step_name = step_name
        self._status = StepStatus(step_name=step_name, status="running")
        self._start_time = 0.0
        self.details: Dict[str, object] = {}

    def __enter__(self):
        log.info("=== Starting step: %s ===", self.step_name)
        self._status.started_at = datetime.now(timezone.utc).isoformat()
        self._start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self._start_time
        self._status.duration_seconds = round(duration, 2)
        self._status.completed_at = datetime.now(timezone.utc).isoformat()
        self._status.details = self.details

        if exc_type is not None:
            self._status.status = "failed"
            self._status.error = str(exc_val)
            log.error(
                "Step '%s' FAILED in %.1fs: %s", self.step_name, duration, exc_val,
                extra=fields(step=self.step_name, error=str(exc_val)),
            )
            return False  # Propagate exception

        self._status.status = "success"
        log.info("Step '%s' completed in %.1fs", self.step_name, duration)
        return False

    @property
    def status(self) -> StepStatus:
        return self._status
