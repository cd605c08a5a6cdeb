"""Step sequencing, status reporting and the CLI."""

import json
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError

from gitops_bootstrap import orchestrator
from gitops_bootstrap.errors import FatalError
from gitops_bootstrap.steps import STEPS
from tests.fakes import Script, status

INGRESS_APPSET = (
    "apiVersion: argoproj.io/v1alpha1\nkind: ApplicationSet\n"
    "metadata:\n  name: ingress-appset\n  namespace: argocd\n"
)


def read_status(cfg):
    return json.loads(cfg.status_file.read_text())["steps"]


@pytest.fixture
def fake_steps(monkeypatch):
    ran = []
    behaviour = {}

    def load(name):
        def main(ctx):
            ran.append(name)
            action = behaviour.get(name)
            if isinstance(action, Exception):
                raise action
            return action

        return SimpleNamespace(main=main)

    monkeypatch.setattr(orchestrator, "load_step", load)
    return ran, behaviour


class TestRunSteps:
    def test_runs_in_order_and_records_details(self, ctx, fake_steps):
        ran, behaviour = fake_steps
        behaviour["a"] = {"coredns": "ready"}
        assert orchestrator.run_steps(ctx, ["a", "b"]) is True
        assert ran == ["a", "b"]
        steps = read_status(ctx.cfg)
        assert [s["status"] for s in steps] == ["success", "success"]
        assert steps[0]["details"] == {"coredns": "ready"}

    def test_stops_at_first_failure(self, ctx, fake_steps):
        ran, behaviour = fake_steps
        behaviour["b"] = FatalError("ca-key-pair rejected")
        assert orchestrator.run_steps(ctx, ["a", "b", "c"]) is False
        assert ran == ["a", "b"]
        steps = read_status(ctx.cfg)
        assert [s["status"] for s in steps] == ["success", "failed"]
        assert steps[1]["error"] == "ca-key-pair rejected"

    def test_unexpected_errors_also_abort(self, ctx, fake_steps):
        ran, behaviour = fake_steps
        behaviour["a"] = KeyError("clusterIP")
        assert orchestrator.run_steps(ctx, ["a", "b"]) is False
        assert ran == ["a"]

    def test_progress_published_per_step(self, ctx, fake_steps):
        ctx.cfg.ssm_prefix = "/k8s/dev"
        puts = []
        ssm = SimpleNamespace(put_parameter=lambda **kw: puts.append(kw))
        orchestrator.run_steps(ctx, ["a", "b"], ssm_client=ssm)
        assert [p["Name"] for p in puts] == ["/k8s/dev/bootstrap/step-status"] * 2
        assert json.loads(puts[1]["Value"])["index"] == 2

    def test_progress_failure_is_not_fatal(self, ctx, fake_steps):
        ran, _ = fake_steps
        ctx.cfg.ssm_prefix = "/k8s/dev"

        def put_parameter(**kwargs):
            raise ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "PutParameter")

        assert orchestrator.run_steps(ctx, ["a", "b"], ssm_client=SimpleNamespace(put_parameter=put_parameter))
        assert ran == ["a", "b"]


class TestIngressOrdering:
    def _prepare(self, ctx, kube, fake_backend, up_to_date):
        (fake_backend.manifest_dir / "ingress-appset.yaml").write_text(INGRESS_APPSET)
        fake_backend.generators["ingress-appset"] = True
        fake_backend.up_to_date["ingress-appset"] = up_to_date
        fake_backend.statuses["ingress-nginx"] = status("Synced", "Healthy")
        kube.put("Service", "ingress-nginx-controller", "ingress-nginx", {"spec": {"clusterIP": "10.0.0.5"}})

    def test_ip_is_never_published_when_ingress_fails(self, ctx, kube, fake_backend):
        self._prepare(ctx, kube, fake_backend, (False, "generating"))
        assert orchestrator.run_steps(ctx, ["06_ingress", "07_ingress_ip"]) is False
        assert ctx.publisher.published == []
        assert ctx.params.cluster_ip is None
        assert [s["step_name"] for s in read_status(ctx.cfg)] == ["06_ingress"]

    def test_ip_published_after_ingress_converges(self, ctx, kube, fake_backend):
        self._prepare(ctx, kube, fake_backend, Script((False, "generating"), (True, "ok")))
        assert orchestrator.run_steps(ctx, ["06_ingress", "07_ingress_ip"]) is True
        assert ctx.params.cluster_ip == "10.0.0.5"
        assert len(ctx.publisher.published) == 1
        assert fake_backend.refreshes == 1


class TestLoadStep:
    def test_every_declared_step_has_a_main(self):
        for name in STEPS:
            assert callable(orchestrator.load_step(name).main)

    def test_unknown_step_is_fatal(self):
        with pytest.raises(FatalError, match="Unknown step"):
            orchestrator.load_step("99_nope")


class TestCli:
    @pytest.fixture(autouse=True)
    def quiet(self, monkeypatch, tmp_path):
        monkeypatch.setattr(orchestrator, "configure_logging", lambda **kw: None)
        monkeypatch.setenv("REPO_DIR", str(tmp_path))
        for var in ("GITOPS_BACKEND", "CLUSTER_PROFILE", "LOCAL_DNS", "STORAGE_CLASS", "CREDENTIAL_BACKEND"):
            monkeypatch.delenv(var, raising=False)

    def test_dry_run_exits_zero(self):
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["setup", "--dry-run"])
        assert info.value.code == 0

    def test_unknown_step_exits_one(self):
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["setup", "--steps", "99_nope", "--dry-run"])
        assert info.value.code == 1

    def test_invalid_backend_rejected_by_parser(self):
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["setup", "--backend", "jenkins"])
        assert info.value.code == 2

    def test_flags_select_backend_and_profile(self):
        args = orchestrator.build_parser().parse_args(["setup", "--backend", "flux", "--profile", "managed"])
        cfg = orchestrator.config_from_args(args)
        assert cfg.backend == "flux"
        assert cfg.dns_suffix == "cluster.internal"
        assert cfg.storage_class == "gp3"

    def test_deploy_requires_file(self):
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["deploy"])
        assert info.value.code == 2

    def test_deploy_missing_file_exits_one(self, tmp_path):
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["deploy", "--file", str(tmp_path / "missing.yaml")])
        assert info.value.code == 1

    def test_malformed_interval_exits_one(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL", "5s")
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["setup", "--dry-run"])
        assert info.value.code == 1

    def test_unreadable_kubeconfig_exits_one(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KUBECONFIG", str(tmp_path / "absent-kubeconfig"))
        with pytest.raises(SystemExit) as info:
            orchestrator.main(["setup"])
        assert info.value.code == 1
