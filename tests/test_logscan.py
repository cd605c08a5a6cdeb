"""Container log scanning."""

from gitops_bootstrap.logscan import pod_containers, scan_namespace


def pod(name, containers, init=()):
    return {
        "metadata": {"name": name},
        "spec": {
            "containers": [{"name": c} for c in containers],
            "initContainers": [{"name": c} for c in init],
        },
    }


def test_init_containers_are_scanned_after_regular_ones():
    assert pod_containers(pod("p", ["app", "sidecar"], ["init-db"])) == ["app", "sidecar", "init-db"]


def test_scan_collects_error_and_warning_lines(kube):
    kube.put("Pod", "grafana-0", "monitoring", pod("grafana-0", ["grafana"], ["init-chown"]))
    kube.logs[("grafana-0", "grafana")] = "level=info msg=ok\nlevel=ERROR msg=db locked\nWARN: slow query\n"
    kube.logs[("grafana-0", "init-chown")] = "done\n"

    findings = scan_namespace(kube, "monitoring")

    assert [(f.container, f.lines) for f in findings] == [
        ("grafana", ["level=ERROR msg=db locked", "WARN: slow query"]),
        ("init-chown", []),
    ]


def test_empty_namespace(kube):
    assert scan_namespace(kube, "monitoring") == []
