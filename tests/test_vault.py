"""Vault lifecycle driver against a simulated vault pod."""

import json

import pytest

from gitops_bootstrap.credentials import Credential, CredentialProvisioner, FileCredentialStore
from gitops_bootstrap.errors import FatalError
from gitops_bootstrap.vault import INIT_IDENTITY, TOKEN_SECRET, VaultDriver, VaultState
from tests.fakes import Script


class FakeVaultPod:
    """Answers the vault CLI the way a real server would."""

    def __init__(self, shares=5, threshold=3):
        self.shares = shares
        self.threshold = threshold
        self.initialized = False
        self.sealed = True
        self.keys = []
        self.root_token = None
        self.submitted = set()
        self.init_count = 0
        self.mounts = {"cubbyhole/": {}, "sys/": {}}
        self.kv = {}
        self.commands = []
        self.tokens = []

    def restart(self):
        self.sealed = True
        self.submitted = set()

    def __call__(self, command, stdin=None):
        self.commands.append(command)
        if command[0] == "sh":
            self.tokens.append(stdin.strip())
            command = command[4:]
        args = [a for a in command[1:] if a != "-tls-skip-verify"]
        verb = tuple(a for a in args[:2])

        if args[0] == "status":
            return json.dumps({
                "initialized": self.initialized, "sealed": self.sealed,
                "t": self.threshold if self.initialized else 0, "progress": len(self.submitted),
            })
        if verb == ("operator", "init"):
            self.init_count += 1
            self.initialized = True
            self.keys = [f"key-{i}" for i in range(self.shares)]
            self.root_token = f"s.root{self.init_count}"
            return json.dumps({
                "unseal_keys_b64": self.keys, "root_token": self.root_token,
                "unseal_threshold": self.threshold,
            })
        if verb == ("operator", "unseal"):
            if args[-1] in self.keys:
                self.submitted.add(args[-1])
            if len(self.submitted) >= self.threshold:
                self.sealed = False
                self.submitted = set()
            return json.dumps({"sealed": self.sealed, "progress": len(self.submitted)})
        if verb == ("secrets", "list"):
            return json.dumps(self.mounts)
        if verb == ("secrets", "enable"):
            self.mounts["secret/"] = {"type": "kv"}
            return "Success! Enabled the kv-v2 secrets engine at: secret/"
        if verb == ("kv", "put"):
            name = args[3]
            self.kv[name] = dict(pair.split("=", 1) for pair in args[4:])
            return "Success!"
        raise AssertionError(f"unexpected vault command {command}")


@pytest.fixture
def pod(kube):
    vault = FakeVaultPod()
    kube.exec_handler = vault
    kube.add_namespace("vault")
    kube.put("Pod", "vault-0", "vault", {"status": {"containerStatuses": [{"started": True}]}})
    return vault


@pytest.fixture
def store(cfg):
    return FileCredentialStore(cfg.credentials_dir, repo_dir=cfg.repo_dir)


def make_driver(kube, store, cfg, clock):
    provisioner = CredentialProvisioner(store, kube, sleep=clock.sleep, clock=clock.time)
    return VaultDriver(kube, store, provisioner, cfg, sleep=clock.sleep, clock=clock.time)


@pytest.fixture
def driver(kube, store, cfg, clock):
    return make_driver(kube, store, cfg, clock)


class TestLifecycle:
    def test_fresh_vault_is_initialised_unsealed_and_token_published(self, driver, pod, kube, store):
        assert driver.bootstrap() is VaultState.TOKEN_PUBLISHED
        assert pod.init_count == 1
        assert kube.secrets[(TOKEN_SECRET, "vault")] == {"vault_token": "s.root1"}
        record = store.load(INIT_IDENTITY)
        assert json.loads(record["unseal_keys_b64"]) == pod.keys

    def test_state_follows_the_lifecycle(self, driver, pod):
        assert driver.state is VaultState.POD_NOT_STARTED
        driver.wait_started()
        assert driver.state is VaultState.POD_STARTED
        driver.initialize()
        assert driver.state is VaultState.INITIALIZED
        driver.unseal()
        assert driver.state is VaultState.UNSEALED
        driver.publish_token()
        assert driver.state is VaultState.TOKEN_PUBLISHED

    def test_rerun_after_restart_unseals_without_reinitialising(self, driver, pod, kube, store, cfg, clock):
        driver.bootstrap()
        pod.restart()
        make_driver(kube, store, cfg, clock).bootstrap()
        assert pod.init_count == 1
        assert not pod.sealed
        assert kube.secrets[(TOKEN_SECRET, "vault")] == {"vault_token": "s.root1"}

    def test_initialise_is_skipped_for_initialised_vault(self, driver, pod, store):
        driver.bootstrap()
        record = store.load(INIT_IDENTITY)
        assert driver.initialize() is False
        assert pod.init_count == 1
        assert store.load(INIT_IDENTITY) == record

    def test_unseal_is_noop_when_unsealed(self, driver, pod):
        driver.bootstrap()
        before = len(pod.commands)
        driver.unseal()
        assert len(pod.commands) == before + 1  # status only

    def test_initialised_without_local_record_is_fatal(self, driver, pod):
        pod.initialized = True
        pod.keys = ["someone-elses-key"]
        with pytest.raises(FatalError, match="no local init record"):
            driver.unseal()

    def test_wrong_keys_leave_vault_sealed(self, driver, pod, store):
        pod.initialized = True
        pod.keys = ["real-1", "real-2", "real-3"]
        store.save(Credential(INIT_IDENTITY, {
            "unseal_keys_b64": json.dumps(["stale-1", "stale-2", "stale-3"]),
            "root_token": "s.stale", "threshold": "3",
        }))
        with pytest.raises(FatalError, match="remains sealed"):
            driver.unseal()

    def test_unseal_of_uninitialised_vault_is_fatal(self, driver, pod):
        with pytest.raises(FatalError, match="uninitialized"):
            driver.unseal()

    def test_waits_for_container_start(self, driver, pod, kube, clock):
        kube.put("Pod", "vault-0", "vault", Script(
            None,
            {"status": {"containerStatuses": [{"started": False}]}},
            {"status": {"containerStatuses": [{"started": True}]}},
        ))
        driver.wait_started()
        assert clock.sleeps == [5, 5]

    def test_tls_flag_follows_subcommand(self, driver, pod):
        driver.initialize()
        init = next(c for c in pod.commands if "init" in c)
        assert init[:4] == ["vault", "operator", "init", "-tls-skip-verify"]


class TestSecrets:
    def test_kv_engine_enabled_once(self, driver, pod):
        driver.bootstrap()
        assert driver.ensure_kv_engine() is True
        assert driver.ensure_kv_engine() is False

    def test_load_secrets_from_directory(self, driver, pod, tmp_path):
        driver.bootstrap()
        secrets = tmp_path / "secrets"
        secrets.mkdir()
        (secrets / "grafana.yaml").write_text("admin-user: admin\nadmin-password: hunter2\n")
        (secrets / "notes.txt").write_text("ignored")
        assert driver.load_secrets(secrets) == 1
        assert pod.kv["grafana"] == {"admin-user": "admin", "admin-password": "hunter2"}
        assert pod.tokens[-1] == "s.root1"
        assert not any("s.root1" in arg for command in pod.commands for arg in command)

    def test_missing_secrets_directory_is_skipped(self, driver, tmp_path):
        assert driver.load_secrets(tmp_path / "absent") == 0

    def test_non_mapping_secret_file_is_fatal(self, driver, pod, tmp_path):
        driver.bootstrap()
        (tmp_path / "bad.yaml").write_text("- just\n- a list\n")
        with pytest.raises(FatalError, match="mapping"):
            driver.load_secrets(tmp_path)
