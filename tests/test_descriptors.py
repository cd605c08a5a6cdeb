"""Descriptor sources and namespace lists."""

import pytest

from gitops_bootstrap.descriptors import (
    SourceItem,
    load_descriptor_source,
    load_namespace_list,
)
from gitops_bootstrap.errors import FatalError


def test_list_form_with_defaults(tmp_path):
    path = tmp_path / "addons.yaml"
    path.write_text(
        "- name: podinfo\n"
        "- name: kyverno\n"
        "  namespace: policy\n"
        "  registry: https://kyverno.github.io/kyverno\n"
        "  revision: 3.1.0\n"
    )
    items = load_descriptor_source(path)
    assert items[0] == SourceItem(name="podinfo", namespace="podinfo")
    assert items[1].namespace == "policy"
    assert items[1].registry == "https://kyverno.github.io/kyverno"
    assert items[1].revision == "3.1.0"


def test_items_mapping_form(tmp_path):
    path = tmp_path / "apps.yaml"
    path.write_text("items:\n  - name: web\n    path: apps/web\n")
    assert load_descriptor_source(path) == [SourceItem(name="web", namespace="web", path="apps/web")]


def test_entry_without_name_is_fatal(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- namespace: orphan\n")
    with pytest.raises(FatalError, match="entry 0"):
        load_descriptor_source(path)


def test_namespace_list_ignores_comments_and_blanks(tmp_path):
    path = tmp_path / "local-ca-namespaces.txt"
    path.write_text("# namespaces trusting the local CA\nmonitoring\n\nvault  # secrets\nflux-system apps\n")
    assert load_namespace_list(path) == ["monitoring", "vault", "flux-system", "apps"]
