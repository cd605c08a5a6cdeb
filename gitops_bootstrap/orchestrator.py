#!/usr/bin/env python3
"""
@format
Bootstrap Orchestrator

Runs the bootstrap steps in order against one cluster, stopping at the
first failure. Each step is imported from ``gitops_bootstrap.steps`` and
its ``main(ctx)`` executed in-process.

Usage:
    # Full bootstrap (ArgoCD, local profile):
    gitops-bootstrap setup

    # Flux on a managed cluster:
    gitops-bootstrap setup --backend flux --profile managed

    # Specific steps only:
    gitops-bootstrap setup --steps 05_cluster_params 06_ingress

    # Dry run (print configuration and step list without executing):
    gitops-bootstrap setup --dry-run

    # Deploy one application and wait for it to be healthy:
    gitops-bootstrap deploy --file local-cluster/apps/podinfo.yaml

    # Scan monitoring logs for errors and warnings:
    gitops-bootstrap check-logs --namespace monitoring

Structured status is written to STATUS_FILE after each step and, when
SSM_PREFIX is set, published to SSM for remote monitoring.
"""

import argparse
import importlib
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from gitops_bootstrap.applier import load_manifests
from gitops_bootstrap.common import StepRunner, StepStatus, configure_logging, write_status
from gitops_bootstrap.config import BACKENDS, PROFILES, Config
from gitops_bootstrap.context import BootstrapContext, build_context
from gitops_bootstrap.descriptors import DeploymentDescriptor
from gitops_bootstrap.errors import BootstrapError, FatalError
from gitops_bootstrap.kube import KubeClient
from gitops_bootstrap.logscan import scan_namespace
from gitops_bootstrap.steps import STEPS

log = logging.getLogger("gitops-bootstrap")

STEP_PACKAGE = "gitops_bootstrap.steps"


# =============================================================================
# Step Loading and Progress Reporting
# =============================================================================

def load_step(name: str):
    """Import one step module. Names are validated against STEPS."""
    if name not in STEPS:
        raise FatalError(f"Unknown step {name!r} (expected one of: {', '.join(STEPS)})")
    return importlib.import_module(f"{STEP_PACKAGE}.{name}")


def publish_progress(cfg: Config, payload: dict, ssm_client=None) -> None:
    """Publish step progress to SSM. Failures are logged, never raised."""
    if not cfg.ssm_prefix:
        return
    name = f"{cfg.ssm_prefix.rstrip('/')}/bootstrap/step-status"
    try:
        ssm = ssm_client or boto3.client("ssm", region_name=cfg.aws_region)
        ssm.put_parameter(Name=name, Value=json.dumps(payload), Type="String", Overwrite=True)
    except (ClientError, BotoCoreError) as exc:
        log.warning("  ⚠ Could not publish progress to %s: %s", name, exc)


# =============================================================================
# Orchestrator
# =============================================================================

def run_steps(
    ctx: BootstrapContext,
    step_names: list[str],
    *,
    ssm_client=None,
) -> bool:
    """
    Execute steps sequentially. Returns True if all succeeded.

    Args:
        ctx: Run context shared by every step.
        step_names: Step module names (without .py) to execute.
    """
    start_time = time.monotonic()
    statuses: list[StepStatus] = []
    all_ok = True

    log.info("Bootstrap orchestrator starting with %d steps", len(step_names))
    log.info("Steps: %s", ", ".join(step_names))

    for i, name in enumerate(step_names, 1):
        log.info("")
        log.info("=" * 60)
        log.info("Step %d/%d: %s", i, len(step_names), name)
        log.info("=" * 60)

        runner = StepRunner(name)
        try:
            with runner:
                details = load_step(name).main(ctx)
                if details:
                    runner.details.update(details)
        except Exception:  # already logged and recorded by StepRunner
            all_ok = False
        finally:
            statuses.append(runner.status)
            write_status(ctx.cfg.status_file, statuses)

        publish_progress(
            ctx.cfg,
            {
                "step": name,
                "index": i,
                "total": len(step_names),
                "status": runner.status.status,
                "duration": runner.status.duration_seconds,
            },
            ssm_client=ssm_client,
        )

        if not all_ok:
            log.error(
                "Aborting orchestrator — step '%s' failed. Completed %d/%d steps successfully.",
                name, i - 1, len(step_names),
            )
            break

    total_duration = round(time.monotonic() - start_time, 2)
    log.info("")
    log.info("=" * 60)
    log.info("Orchestrator finished: %s (%ss)", "ALL PASSED" if all_ok else "FAILED", total_duration)
    log.info("Status written to: %s", ctx.cfg.status_file)
    return all_ok


# =============================================================================
# Commands
# =============================================================================

def print_banner(cfg: Config, title: str) -> None:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    log.info("=== %s ===", title)
    for key, value in cfg.summary().items():
        log.info("%-20s %s", f"{key}:", value)
    log.info("%-20s %s", "triggered:", now)
    log.info("")


def cmd_setup(cfg: Config, args: argparse.Namespace) -> int:
    step_names = args.steps or STEPS
    for name in step_names:
        if name not in STEPS:
            raise FatalError(f"Unknown step {name!r} (expected one of: {', '.join(STEPS)})")

    print_banner(cfg, "GitOps Cluster Bootstrap")
    if cfg.dry_run:
        log.info("=== DRY RUN — no changes will be made ===")
        for i, name in enumerate(step_names, 1):
            log.info("  %d. %s", i, name)
        return 0

    ctx = build_context(cfg)
    return 0 if run_steps(ctx, list(step_names)) else 1


def cmd_deploy(cfg: Config, args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.exists():
        raise FatalError(f"Application file not found: {path}")

    ctx = build_context(cfg)
    documents = load_manifests(path, ctx.substitutions())
    if not documents:
        raise FatalError(f"{path} contains no manifests")
    ctx.applier.apply_all(documents)

    # The first document is the application to wait on
    metadata = documents[0]["metadata"]
    descriptor = DeploymentDescriptor(
        name=metadata["name"],
        namespace=metadata.get("namespace") or ctx.backend.namespace,
    )
    ctx.sequencer.deploy(descriptor, timeout=args.timeout)
    return 0


def cmd_check_logs(cfg: Config, args: argparse.Namespace) -> int:
    kube = KubeClient.from_kubeconfig(cfg.kubeconfig, cfg.kube_context)
    scan_namespace(kube, args.namespace, tail=args.tail)
    return 0


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitops-bootstrap",
        description="Bootstrap a Kubernetes cluster into a GitOps-managed state",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit one JSON object per log line")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="Run the full bootstrap sequence")
    setup.add_argument("--backend", choices=BACKENDS, help="GitOps controller (default: GITOPS_BACKEND or argocd)")
    setup.add_argument("--profile", choices=list(PROFILES), help="Cluster profile (default: CLUSTER_PROFILE or local)")
    setup.add_argument("--steps", nargs="*", help="Specific steps to run")
    setup.add_argument("--dry-run", action="store_true", help="Print configuration and step list without executing")
    setup.set_defaults(handler=cmd_setup)

    deploy = sub.add_parser("deploy", help="Apply one application and wait for it to be healthy")
    deploy.add_argument("--file", required=True, help="Application manifest")
    deploy.add_argument("--backend", choices=BACKENDS, help="GitOps controller")
    deploy.add_argument("--timeout", type=int, default=None, help="Seconds to wait (default: DEPLOY_TIMEOUT)")
    deploy.set_defaults(handler=cmd_deploy)

    logs = sub.add_parser("check-logs", help="Scan pod logs for error and warning lines")
    logs.add_argument("--namespace", default="monitoring")
    logs.add_argument("--tail", type=int, default=1000)
    logs.set_defaults(handler=cmd_check_logs)

    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    overrides = {}
    for name in ("backend", "profile"):
        value = getattr(args, name, None)
        if value:
            overrides[name] = value
    cfg = Config(**overrides)
    cfg.dry_run = bool(getattr(args, "dry_run", False))
    cfg.debug = args.debug
    cfg.json_logs = cfg.json_logs or args.json_logs
    return cfg


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(json_output=args.json_logs, debug=args.debug)

    try:
        cfg = config_from_args(args)
        if cfg.json_logs and not args.json_logs:
            configure_logging(json_output=True, debug=cfg.debug)
        cfg.validate()
        code = args.handler(cfg, args)
    except KeyboardInterrupt:
        log.info("\n✗ Bootstrap interrupted")
        sys.exit(130)
    except BootstrapError as exc:
        log.error("✗ %s failed: %s", args.command, exc, exc_info=args.debug)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
