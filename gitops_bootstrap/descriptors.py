"""Deployment descriptors and the lists they are generated from."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence, Union

import yaml

from gitops_bootstrap.errors import FatalError


@dataclass(frozen=True)
class DeploymentDescriptor:
    """A declarative workload to converge.

    ``manifest`` is a path to a YAML file, an already-built object, or a
    list of objects applied in order (sources before the application).
    """
    name: str
    namespace: str
    manifest: Union[Path, Mapping, Sequence[Mapping], None] = None


@dataclass(frozen=True)
class SourceItem:
    """One entry of an add-on/app list."""
    name: str
    namespace: str
    repo: str = ""
    path: str = ""
    registry: str = ""
    revision: str = "HEAD"


def load_descriptor_source(path: Path) -> list[SourceItem]:
    """
    Read an add-on/app list.

    Accepts either a top-level YAML list or a mapping with an ``items`` key.
    Each entry needs ``name``; ``namespace`` defaults to the name.
    """
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or []
    if isinstance(data, Mapping):
        data = data.get("items") or []
    if not isinstance(data, list):
        raise FatalError(f"{path}: expected a list of entries")

    items: list[SourceItem] = []
    for i, entry in enumerate(data):
        if not isinstance(entry, Mapping) or not entry.get("name"):
            raise FatalError(f"{path}: entry {i} has no name")
        items.append(SourceItem(
            name=str(entry["name"]),
            namespace=str(entry.get("namespace") or entry["name"]),
            repo=str(entry.get("repo", "")),
            path=str(entry.get("path", "")),
            registry=str(entry.get("registry", "")),
            revision=str(entry.get("revision", "HEAD")),
        ))
    return items


def load_namespace_list(path: Path) -> list[str]:
    """One namespace per line; blank lines and # comments ignored."""
    namespaces = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            namespaces.extend(line.split())
    return namespaces

