from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from k8s_conformance.errors import ProvisionFailure

CRD_KIND = "CustomResourceDefinition"


def _group_of(api_version: str) -> str:
    if "/" not in api_version:
        return ""
    return api_version.split("/", 1)[0]


def load_documents(text: str, *, source: str = "<string>") -> list[dict[str, Any]]:
    yaml = YAML(typ="safe", pure=True)
    try:
        raw = list(yaml.load_all(text))
    except YAMLError as exc:
        raise ProvisionFailure(f"Invalid YAML in {source}: {exc}") from exc
    docs: list[dict[str, Any]] = []
    for idx, doc in enumerate(raw):
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ProvisionFailure(f"Document #{idx} in {source} is not a mapping")
        if not doc.get("apiVersion") or not doc.get("kind"):
            raise ProvisionFailure(f"Document #{idx} in {source} is missing apiVersion/kind")
        docs.append(doc)
    return docs


@dataclass(frozen=True)
class Manifest:
    path: Path
    documents: tuple[dict[str, Any], ...]

    @property
    def name(self) -> str:
        return self.path.name

    def crds(self) -> list[dict[str, Any]]:
        return [d for d in self.documents if d.get("kind") == CRD_KIND]

    def defined_kinds(self) -> set[tuple[str, str]]:
        out: set[tuple[str, str]] = set()
        for crd in self.crds():
            spec = crd.get("spec") or {}
            names = spec.get("names") or {}
            if spec.get("group") and names.get("kind"):
                out.add((spec["group"], names["kind"]))
        return out

    def instantiated_kinds(self) -> set[tuple[str, str]]:
        return {(_group_of(str(d["apiVersion"])), str(d["kind"])) for d in self.documents}


def load_manifest(path: Path) -> Manifest:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProvisionFailure(f"Cannot read manifest {path}: {exc}") from exc
    return Manifest(path=path, documents=tuple(load_documents(text, source=str(path))))


def load_manifests(paths: Iterable[Path]) -> list[Manifest]:
    return [load_manifest(Path(p)) for p in paths]


def check_manifest_order(manifests: Sequence[Manifest]) -> None:
    defined_at: dict[tuple[str, str], int] = {}
    for idx, manifest in enumerate(manifests):
        for key in manifest.defined_kinds():
            defined_at.setdefault(key, idx)

    for idx, manifest in enumerate(manifests):
        for key in sorted(manifest.instantiated_kinds()):
            where = defined_at.get(key)
            if where is not None and where > idx:
                group, kind = key
                raise ProvisionFailure(
                    f"{manifest.name} instantiates {group}/{kind} before its definition in {manifests[where].name}",
                    details={"manifest": manifest.name, "kind": kind},
                )


def crd_definitions(manifests: Iterable[Manifest]) -> Iterator[dict[str, Any]]:
    for manifest in manifests:
        yield from manifest.crds()
