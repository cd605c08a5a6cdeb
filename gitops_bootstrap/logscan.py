"""Scan recent container logs of a namespace for error and warning lines."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

log = logging.getLogger("gitops-bootstrap.logscan")

PATTERN = re.compile(r"error|warn", re.IGNORECASE)


@dataclass
class ContainerFindings:
    pod: str
    container: str
    lines: list[str] = field(default_factory=list)


def pod_containers(pod: dict) -> list[str]:
    """Regular containers first, then init containers."""
    spec = pod.get("spec") or {}
    names = [c["name"] for c in spec.get("containers") or []]
    names += [c["name"] for c in spec.get("initContainers") or []]
    return names


def scan_namespace(kube, namespace: str, *, tail: int = 1000) -> list[ContainerFindings]:
    """Return, per container, the tail log lines matching error|warn."""
    log.info("🔍 Fetching pods from namespace: %s", namespace)
    pods = kube.list("v1", "Pod", namespace)
    if not pods:
        log.info("🤷 No pods found in namespace '%s'", namespace)
        return []

    log.info("Pods found: %d pods", len(pods))
    findings: list[ContainerFindings] = []
    for pod in pods:
        name = pod["metadata"]["name"]
        log.info("=" * 50)
        log.info("Pod: %s", name)
        log.info("=" * 50)

        containers = pod_containers(pod)
        if not containers:
            log.info("  No containers found for pod '%s'.", name)
            continue

        for container in containers:
            log.info("--- Container: %s ---", container)
            text = kube.read_pod_log(name, namespace, container, tail_lines=tail) or ""
            matches = [line for line in text.splitlines() if PATTERN.search(line)]
            if matches:
                for line in matches:
                    log.info("%s", line)
            else:
                log.info("  No 'error' or 'warn' lines found in recent logs.")
            findings.append(ContainerFindings(pod=name, container=container, lines=matches))

    log.info("✅ Log check complete.")
    return findings
