"""Credential stores and the generate-once provisioner."""

import stat

import pytest
from botocore.exceptions import ClientError

from gitops_bootstrap.credentials import (
    Credential,
    CredentialProvisioner,
    FileCredentialStore,
    SsmCredentialStore,
    random_password,
)
from gitops_bootstrap.errors import FatalError, RetriableInfraError, WaitTimeout
from tests.fakes import Script


@pytest.fixture
def store(tmp_path):
    return FileCredentialStore(tmp_path / "creds", repo_dir=tmp_path / "repo")


@pytest.fixture
def provisioner(store, kube, clock):
    return CredentialProvisioner(store, kube, interval=5, timeout=30, sleep=clock.sleep, clock=clock.time)


class TestFileCredentialStore:
    def test_round_trips_and_restricts_permissions(self, store):
        store.save(Credential("argocd-admin", {"password": "s3cret"}))
        loaded = store.load("argocd-admin")
        assert loaded["password"] == "s3cret"
        path = store.directory / "argocd-admin.json"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(store.directory.stat().st_mode) == 0o700

    def test_missing_identity_loads_as_none(self, store):
        assert store.load("never-generated") is None

    def test_refuses_directory_inside_repository(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        with pytest.raises(FatalError, match="never be committed"):
            FileCredentialStore(repo / "resources" / "creds", repo_dir=repo)

    def test_rejects_path_like_identities(self, store):
        with pytest.raises(FatalError):
            store.load("../escape")

    def test_corrupt_record_is_fatal(self, store):
        store.directory.mkdir(parents=True)
        (store.directory / "ca.json").write_text("{not json")
        with pytest.raises(FatalError, match="corrupt"):
            store.load("ca")


class FakeSsm:
    def __init__(self, error=None):
        self.params = {}
        self.error = error

    def get_parameter(self, Name, WithDecryption):
        if self.error:
            raise self.error
        if Name not in self.params:
            raise ClientError({"Error": {"Code": "ParameterNotFound", "Message": Name}}, "GetParameter")
        return {"Parameter": {"Value": self.params[Name]}}

    def put_parameter(self, Name, Value, Type, Overwrite):
        assert Type == "SecureString"
        self.params[Name] = Value


class TestSsmCredentialStore:
    def test_saves_secure_string_under_prefix(self):
        ssm = FakeSsm()
        store = SsmCredentialStore("/k8s/dev/", "eu-west-1", ssm_client=ssm)
        store.save(Credential("ca", {"tls.crt": "CERT"}))
        assert "/k8s/dev/credentials/ca" in ssm.params
        assert store.load("ca")["tls.crt"] == "CERT"

    def test_not_found_is_none(self):
        store = SsmCredentialStore("/k8s/dev", "eu-west-1", ssm_client=FakeSsm())
        assert store.load("ca") is None

    def test_throttling_is_retriable(self):
        error = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "GetParameter")
        store = SsmCredentialStore("/k8s/dev", "eu-west-1", ssm_client=FakeSsm(error))
        with pytest.raises(RetriableInfraError):
            store.load("ca")

    def test_access_denied_is_fatal(self):
        error = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetParameter")
        store = SsmCredentialStore("/k8s/dev", "eu-west-1", ssm_client=FakeSsm(error))
        with pytest.raises(FatalError):
            store.load("ca")


class TestProvisioner:
    def test_generates_once_and_reuses(self, store, kube):
        calls = []

        def generator():
            calls.append(1)
            return {"password": f"pw-{len(calls)}"}

        first = CredentialProvisioner(store, kube).ensure_credential("grafana", generator)
        second = CredentialProvisioner(store, kube).ensure_credential("grafana", generator)
        assert first == second
        assert second["password"] == "pw-1"
        assert len(calls) == 1

    def test_empty_generator_output_is_fatal(self, provisioner):
        with pytest.raises(FatalError):
            provisioner.ensure_credential("x", lambda: {})

    def test_publish_waits_for_namespace(self, provisioner, kube, clock):
        kube.put("Namespace", "cert-manager", None, Script(None, None, {"metadata": {"name": "cert-manager"}}))
        ca = Credential("ca", {"tls.crt": "CERT", "tls.key": "KEY"})
        provisioner.publish_credential(ca, "ca-key-pair", "cert-manager")
        assert kube.secrets[("ca-key-pair", "cert-manager")] == {"tls.crt": "CERT", "tls.key": "KEY"}
        assert clock.sleeps == [5, 5]

    def test_publish_maps_keys(self, provisioner, kube):
        kube.add_namespace("vault")
        record = Credential("vault-init", {"root_token": "s.root", "unseal_keys_b64": "[]"})
        provisioner.publish_credential(record, "vault-token", "vault", keys={"vault_token": "root_token"})
        assert kube.secrets[("vault-token", "vault")] == {"vault_token": "s.root"}

    def test_missing_namespace_times_out(self, provisioner):
        with pytest.raises(WaitTimeout, match="namespace/nowhere"):
            provisioner.publish_credential(Credential("x", {"a": "b"}), "s", "nowhere")

    def test_read_controller_secret_missing_key(self, provisioner, kube):
        kube.secrets[("argocd-initial-admin-secret", "argocd")] = {"other": "x"}
        with pytest.raises(FatalError, match="no key 'password'"):
            provisioner.read_controller_secret("argocd-initial-admin-secret", "argocd", "password")


def test_random_password_alphanumeric():
    password = random_password(32)["password"]
    assert len(password) == 32
    assert password.isalnum()
