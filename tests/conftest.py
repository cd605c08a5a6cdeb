"""Shared fixtures."""

import pytest

from gitops_bootstrap.applier import ResourceApplier
from gitops_bootstrap.config import Config
from gitops_bootstrap.context import BootstrapContext
from gitops_bootstrap.credentials import CredentialProvisioner, FileCredentialStore
from gitops_bootstrap.gitops import DeploymentSequencer
from gitops_bootstrap.publisher import ClusterParameters
from tests.fakes import FakeBackend, FakeClock, FakeKube, FakeRepo, RecordingPublisher, git


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def cfg(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    return Config(
        kubeconfig=str(tmp_path / "kubeconfig"),
        kube_context="",
        repo_dir=repo,
        config_dir=None,
        credentials_dir=tmp_path / "credentials",
        credential_backend="file",
        status_file=tmp_path / "status.json",
        backend="argocd",
        profile="local",
        dns_suffix="test.local",
        storage_class="",
        repo_url="https://git.example.com/cluster-config.git",
        git_remote="origin",
        git_branch="main",
        poll_interval=5,
        cluster_timeout=60,
        deploy_timeout=60,
        generator_timeout=30,
        refresh_timeout=30,
        vault_start_timeout=60,
        vault_key_shares=5,
        vault_key_threshold=3,
        vault_tls_skip_verify=True,
        ssm_prefix="",
        json_logs=False,
    )


@pytest.fixture
def fake_backend(tmp_path):
    manifests = tmp_path / "manifests"
    manifests.mkdir()
    return FakeBackend(manifests)


@pytest.fixture
def ctx(cfg, kube, fake_backend, clock):
    store = FileCredentialStore(cfg.credentials_dir, repo_dir=cfg.repo_dir)
    applier = ResourceApplier(kube, sleep=clock.sleep, clock=clock.time)
    return BootstrapContext(
        cfg=cfg,
        kube=kube,
        applier=applier,
        backend=fake_backend,
        sequencer=DeploymentSequencer(
            applier, fake_backend,
            interval=5, timeout=30, generator_timeout=20,
            sleep=clock.sleep, clock=clock.time,
        ),
        store=store,
        credentials=CredentialProvisioner(store, kube, sleep=clock.sleep, clock=clock.time),
        repo=FakeRepo(),
        publisher=RecordingPublisher(),
        vault=None,
        params=ClusterParameters(cfg.dns_suffix, cfg.storage_class),
        sleep=clock.sleep,
        clock=clock.time,
    )


# -- real git repositories ----------------------------------------------------

@pytest.fixture
def git_identity(monkeypatch):
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Bootstrap Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "bootstrap@example.com")


@pytest.fixture
def remote(tmp_path, git_identity):
    bare = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(bare))
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "checkout", "-b", "main")
    (seed / "README.md").write_text("cluster config\n")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "initial")
    git(seed, "remote", "add", "origin", str(bare))
    git(seed, "push", "origin", "HEAD:main")
    return bare


@pytest.fixture
def clone(tmp_path, remote):
    def make(name):
        path = tmp_path / name
        git(tmp_path, "clone", "-b", "main", str(remote), str(path))
        return path
    return make
