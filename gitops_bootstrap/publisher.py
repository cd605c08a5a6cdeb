"""Config publisher.

Renders cluster-specific parameters into the GitOps repository and pushes
them, committing only when the rendered output differs from what is already
committed. After every commit the caller must make the GitOps controller
refresh its source before relying on the new values.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

import yaml

from gitops_bootstrap.common import CmdResult, run_cmd
from gitops_bootstrap.errors import CommandError, FatalError, GitConflictError

log = logging.getLogger("gitops-bootstrap.publisher")

PARAMS_PATH = "local-cluster/config/cluster-params.yaml"
REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first")


class PublishOutcome(enum.Enum):
    COMMITTED = "committed"
    NO_OP_UNCHANGED = "unchanged"


@dataclass
class ClusterParameters:
    """Values only known once the cluster exists; rendered into git."""
    dns_suffix: str
    storage_class: str
    cluster_ip: Optional[str] = None

    def render(self) -> str:
        data: dict[str, str] = {"dnsSuffix": self.dns_suffix}
        if self.cluster_ip:
            data["clusterIP"] = self.cluster_ip
        data["storageClass"] = self.storage_class
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)

    @classmethod
    def parse(cls, text: str) -> "ClusterParameters":
        data = yaml.safe_load(text) or {}
        if not isinstance(data, Mapping):
            raise FatalError(f"{PARAMS_PATH}: expected a mapping")
        return cls(
            dns_suffix=str(data.get("dnsSuffix", "")),
            storage_class=str(data.get("storageClass", "")),
            cluster_ip=data.get("clusterIP") or None,
        )


class GitRepository:
    """The handful of git operations the bootstrap needs, via the git CLI."""

    def __init__(
        self,
        path: Path,
        *,
        remote: str = "origin",
        branch: str = "main",
        runner: Callable[..., CmdResult] = run_cmd,
    ):
        self.path = Path(path)
        self.remote = remote
        self.branch = branch
        self._run = runner

    def git(self, *args: str, check: bool = True) -> CmdResult:
        return self._run(["git", *args], cwd=self.path, check=check, timeout=120)

    def configure_pull_rebase(self) -> None:
        self.git("config", "pull.rebase", "true")

    def remote_url(self) -> str:
        return self.git("remote", "get-url", self.remote).stdout.strip()

    def add(self, paths: Iterable[str]) -> None:
        self.git("add", "--", *paths)

    def has_staged_changes(self, paths: Iterable[str]) -> bool:
        result = self.git("diff", "--cached", "--quiet", "--", *paths, check=False)
        if result.returncode not in (0, 1):
            raise CommandError(result.command, result.returncode, result.stderr)
        return result.returncode == 1

    def commit(self, message: str, paths: Iterable[str]) -> None:
        self.git("commit", "-m", message, "--", *paths)

    def remote_branch_exists(self) -> bool:
        result = self.git("ls-remote", "--exit-code", "--heads", self.remote, self.branch, check=False)
        if result.returncode not in (0, 2):
            raise CommandError(result.command, result.returncode, result.stderr)
        return result.returncode == 0

    def unpushed_commits(self) -> int:
        """Commits on HEAD that the remote branch does not have yet."""
        if not self.remote_branch_exists():
            return int(self.git("rev-list", "--count", "HEAD").stdout.strip() or 0)
        self.git("fetch", self.remote, self.branch)
        upstream = f"{self.remote}/{self.branch}"
        return int(self.git("rev-list", "--count", f"{upstream}..HEAD").stdout.strip() or 0)

    def pull_rebase(self) -> None:
        if not self.remote_branch_exists():
            return
        result = self.git("pull", "--rebase", self.remote, self.branch, check=False)
        if result.returncode != 0:
            self.git("rebase", "--abort", check=False)
            raise GitConflictError(
                f"git pull --rebase {self.remote} {self.branch} failed: {result.stderr.strip()[:500]}"
            )

    def push(self) -> CmdResult:
        return self.git("push", self.remote, f"HEAD:{self.branch}", check=False)


class ConfigPublisher:
    """Write-if-changed, commit, pull --rebase, push."""

    def __init__(self, repo: GitRepository, *, push: bool = True):
        self.repo = repo
        self.push = push

    def publish(self, files: Mapping[str, str], message: str) -> PublishOutcome:
        """
        Publish rendered files (repo-relative path → content).

        Returns NO_OP_UNCHANGED without committing when every file already
        matches what is committed.

        Raises:
            GitConflictError: Push still rejected after one pull-rebase retry.
            CommandError: Any other git failure.
        """
        for relpath, content in files.items():
            target = self.repo.path / relpath
            if target.exists() and target.read_text(encoding="utf-8") == content:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            log.info("  → Rendered %s", relpath)

        paths = list(files)
        self.repo.add(paths)
        if not self.repo.has_staged_changes(paths):
            # A previous run may have committed and then failed to push
            if self.push and self.repo.unpushed_commits():
                log.warning("  ⚠ Local commits not on %s/%s yet — pushing them",
                            self.repo.remote, self.repo.branch)
                self._push_with_retry()
                return PublishOutcome.COMMITTED
            log.info("  ✓ %s unchanged — nothing to commit", ", ".join(paths))
            return PublishOutcome.NO_OP_UNCHANGED

        self.repo.commit(message, paths)
        log.info("  ✓ Committed: %s", message)
        if self.push:
            self._push_with_retry()
        return PublishOutcome.COMMITTED

    def publish_params(self, params: ClusterParameters, message: str) -> PublishOutcome:
        return self.publish({PARAMS_PATH: params.render()}, message)

    def read(self, relpath: str) -> Optional[str]:
        """Current content of a repo file, or None when it does not exist."""
        target = self.repo.path / relpath
        return target.read_text(encoding="utf-8") if target.exists() else None

    def committed_params(self) -> Optional[ClusterParameters]:
        text = self.read(PARAMS_PATH)
        return ClusterParameters.parse(text) if text else None

    def _push_with_retry(self) -> None:
        self.repo.pull_rebase()
        result = self.repo.push()
        if result.returncode == 0:
            log.info("  ✓ Pushed to %s/%s", self.repo.remote, self.repo.branch)
            return
        if not _rejected(result):
            raise CommandError(result.command, result.returncode, result.stderr)

        log.warning("  ⚠ Push rejected — pulling and retrying once")
        self.repo.pull_rebase()
        result = self.repo.push()
        if result.returncode == 0:
            log.info("  ✓ Pushed to %s/%s after rebase", self.repo.remote, self.repo.branch)
            return
        raise GitConflictError(
            f"Push to {self.repo.remote}/{self.repo.branch} rejected after pull-rebase retry: "
            f"{result.stderr.strip()[:500]}"
        )


def _rejected(result: CmdResult) -> bool:
    return any(marker in result.stderr for marker in REJECTED_MARKERS)
