from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from k8s_conformance.errors import SchemaNotRegistered

GATEWAY_API_GROUP = "gateway.networking.k8s.io"

_GATEWAY_API_KINDS: dict[str, tuple[tuple[str, bool], ...]] = {
    "v1": (
        ("GatewayClass", False),
        ("Gateway", True),
        ("HTTPRoute", True),
        ("GRPCRoute", True),
    ),
    "v1beta1": (
        ("GatewayClass", False),
        ("Gateway", True),
        ("HTTPRoute", True),
        ("ReferenceGrant", True),
    ),
    "v1alpha2": (
        ("TLSRoute", True),
        ("TCPRoute", True),
        ("UDPRoute", True),
        ("ReferenceGrant", True),
    ),
}


def _plural(kind: str) -> str:
    lower = kind.lower()
    if lower.endswith("s"):
        return lower + "es"
    if lower.endswith("y"):
        return lower[:-1] + "ies"
    return lower + "s"


def split_api_version(api_version: str) -> tuple[str, str]:
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


@dataclass(frozen=True)
class ResourceType:
    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True
    schema: dict[str, Any] | None = None

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


def _json_path(err: object) -> str:
    path = getattr(err, "absolute_path", None)
    if not path:
        return "$"
    out = "$"
    for part in path:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}"
    return out


@dataclass
class SchemeRegistry:
    types: dict[tuple[str, str], ResourceType] = field(default_factory=dict)

    def add_type(
        self,
        api_version: str,
        kind: str,
        *,
        plural: str | None = None,
        namespaced: bool = True,
        schema: dict[str, Any] | None = None,
    ) -> ResourceType:
        group, version = split_api_version(api_version)
        rtype = ResourceType(
            group=group,
            version=version,
            kind=kind,
            plural=plural or _plural(kind),
            namespaced=namespaced,
            schema=schema,
        )
        existing = self.types.get((api_version, kind))
        if existing is not None and existing.schema is not None and schema is None:
            return existing
        self.types[(api_version, kind)] = rtype
        return rtype

    def add_crd(self, crd: dict[str, Any]) -> list[ResourceType]:
        spec = crd.get("spec") or {}
        names = spec.get("names") or {}
        group = spec.get("group")
        kind = names.get("kind")
        if not group or not kind:
            raise ValueError("CustomResourceDefinition is missing spec.group or spec.names.kind")
        namespaced = spec.get("scope", "Namespaced") == "Namespaced"
        out: list[ResourceType] = []
        for version in spec.get("versions") or []:
            if not version.get("served", True):
                continue
            schema = (version.get("schema") or {}).get("openAPIV3Schema")
            out.append(
                self.add_type(
                    f"{group}/{version['name']}",
                    kind,
                    plural=names.get("plural"),
                    namespaced=namespaced,
                    schema=schema,
                )
            )
        return out

    def is_registered(self, api_version: str, kind: str) -> bool:
        return (api_version, kind) in self.types

    def lookup(self, api_version: str, kind: str) -> ResourceType:
        rtype = self.types.get((api_version, kind))
        if rtype is None:
            raise SchemaNotRegistered(api_version, kind)
        return rtype

    def resolve(self, obj: dict[str, Any]) -> ResourceType:
        return self.lookup(str(obj.get("apiVersion", "")), str(obj.get("kind", "")))

    def validate(self, obj: dict[str, Any]) -> list[str]:
        rtype = self.resolve(obj)
        if rtype.schema is None:
            return []
        validator = Draft202012Validator(rtype.schema)
        errors = sorted(validator.iter_errors(obj), key=lambda e: list(getattr(e, "absolute_path", [])))
        return [f"{_json_path(e)}: {e.message}" for e in errors]

    def api_versions(self) -> list[str]:
        return sorted({api_version for api_version, _ in self.types})


def install_core(registry: SchemeRegistry) -> None:
    for kind, plural in (
        ("Pod", None),
        ("Service", None),
        ("ConfigMap", None),
        ("Secret", None),
        ("ServiceAccount", None),
        ("Endpoints", "endpoints"),
    ):
        registry.add_type("v1", kind, plural=plural)
    registry.add_type("v1", "Namespace", namespaced=False)
    registry.add_type("apps/v1", "Deployment")
    registry.add_type("apps/v1", "DaemonSet")
    registry.add_type("discovery.k8s.io/v1", "EndpointSlice")
    registry.add_type("rbac.authorization.k8s.io/v1", "ClusterRole", namespaced=False)
    registry.add_type("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", namespaced=False)
    registry.add_type("rbac.authorization.k8s.io/v1", "Role")
    registry.add_type("rbac.authorization.k8s.io/v1", "RoleBinding")


def install_apiextensions(registry: SchemeRegistry) -> None:
    registry.add_type("apiextensions.k8s.io/v1", "CustomResourceDefinition", namespaced=False)


def install_gateway_api(registry: SchemeRegistry, versions: Iterable[str] = ("v1", "v1beta1", "v1alpha2")) -> None:
    for version in versions:
        kinds = _GATEWAY_API_KINDS.get(version)
        if kinds is None:
            raise ValueError(f"Unsupported Gateway API version: {version}")
        for kind, namespaced in kinds:
            registry.add_type(f"{GATEWAY_API_GROUP}/{version}", kind, namespaced=namespaced)


def default_registry(crds: Iterable[dict[str, Any]] = ()) -> SchemeRegistry:
    registry = SchemeRegistry()
    install_core(registry)
    install_apiextensions(registry)
    install_gateway_api(registry)
    for crd in crds:
        registry.add_crd(crd)
    return registry
