from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from ruamel.yaml import YAML

from k8s_conformance.report import REPORT_FORMATS
from k8s_conformance.selection import TestSelection

DEFAULT_CLUSTER_IMAGE = "docker.io/rancher/k3s:v1.29.3-k3s1"
DEFAULT_SUBJECT_IMAGE = "traefik/traefik:latest"
DEFAULT_SUBJECT_NAMESPACE = "traefik"
DEFAULT_SUBJECT_DEPLOYMENT = "traefik"
DEFAULT_PROFILES = ("GATEWAY-GRPC", "GATEWAY-HTTP", "GATEWAY-TLS")

ENV_ENABLE = "K8S_CONFORMANCE"
ENV_RUN_TEST = "K8S_CONFORMANCE_RUN_TEST"
ENV_SUBJECT_VERSION = "K8S_CONFORMANCE_SUBJECT_VERSION"
ENV_SHOW_LOG = "K8S_CONFORMANCE_SHOW_LOG"

_TRUTHY = {"1", "true", "yes", "on"}


def _truthy(value: str | None) -> bool:
    return value is not None and value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class TimeoutConfig:
    cluster_start_s: float = 120.0
    subject_ready_s: float = 30.0
    probe_s: float = 10.0
    poll_interval_s: float = 1.0
    http_request_s: float = 5.0


@dataclass(frozen=True)
class ProbeConfig:
    port: int = 9000
    path: str = "/api/entrypoints"
    contains: str = '"name":"web"'
    scheme: str = "http"


@dataclass(frozen=True)
class ImplementationInfo:
    organization: str = "traefik"
    project: str = "traefik"
    url: str = "https://traefik.io/"
    version: str = "dev"
    contact: tuple[str, ...] = ("@traefik/maintainers",)


@dataclass(frozen=True)
class HarnessSettings:
    enabled: bool = False
    cluster_image: str = DEFAULT_CLUSTER_IMAGE
    subject_image: str = DEFAULT_SUBJECT_IMAGE
    subject_namespace: str = DEFAULT_SUBJECT_NAMESPACE
    subject_deployment: str = DEFAULT_SUBJECT_DEPLOYMENT
    manifests: tuple[Path, ...] = ()
    registry: str | None = None
    profiles: frozenset[str] = frozenset(DEFAULT_PROFILES)
    supported_features: frozenset[str] = frozenset()
    enable_all_supported_features: bool = False
    run_test: str | None = None
    skip_tests: frozenset[str] = frozenset()
    implementation: ImplementationInfo = field(default_factory=ImplementationInfo)
    report_dir: Path = Path("conformance-reports")
    report_format: str = "yaml"
    mode: str = "default"
    show_log: bool = False
    max_parallel: int = 1
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)

    def __post_init__(self) -> None:
        if self.report_format not in REPORT_FORMATS:
            raise ValueError(
                f"Unsupported report format {self.report_format!r} (expected one of: {', '.join(REPORT_FORMATS)})"
            )

    def selection(self) -> TestSelection:
        return TestSelection(
            profiles=self.profiles,
            supported_features=self.supported_features,
            enable_all_supported_features=self.enable_all_supported_features,
            run_test=self.run_test,
            skip_tests=self.skip_tests,
        )

    def with_env(self, env: Mapping[str, str] | None = None) -> "HarnessSettings":
        env = os.environ if env is None else env
        updates: dict[str, Any] = {}
        if _truthy(env.get(ENV_ENABLE)):
            updates["enabled"] = True
        if env.get(ENV_RUN_TEST):
            updates["run_test"] = env[ENV_RUN_TEST]
        if env.get(ENV_SUBJECT_VERSION):
            updates["implementation"] = replace(self.implementation, version=env[ENV_SUBJECT_VERSION])
        if _truthy(env.get(ENV_SHOW_LOG)):
            updates["show_log"] = True
        return replace(self, **updates) if updates else self

    def with_overrides(self, **overrides: Any) -> "HarnessSettings":
        implementation = self.implementation
        for key in ("organization", "project", "url", "version", "contact"):
            value = overrides.pop(f"implementation_{key}", None)
            if value is not None:
                implementation = replace(implementation, **{key: value})
        clean = {key: value for key, value in overrides.items() if value is not None}
        unknown = set(clean) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, implementation=implementation, **clean)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Config section {key!r} must be a mapping")
    return value


def _strings(value: Any, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ValueError(f"Config value {key!r} must be a list of strings")
    return tuple(str(item) for item in value)


def settings_from_mapping(data: Mapping[str, Any], *, base_dir: Path | None = None) -> HarnessSettings:
    base = HarnessSettings()
    updates: dict[str, Any] = {}

    for key in ("enabled", "show_log", "enable_all_supported_features"):
        if key in data:
            updates[key] = bool(data[key])
    for key in ("cluster_image", "registry", "run_test", "mode"):
        if data.get(key) is not None:
            updates[key] = str(data[key])
    if data.get("max_parallel") is not None:
        updates["max_parallel"] = int(data["max_parallel"])

    subject = _section(data, "subject")
    for key in ("image", "namespace", "deployment"):
        if subject.get(key) is not None:
            updates[f"subject_{key}"] = str(subject[key])

    if "manifests" in data:
        root = base_dir or Path.cwd()
        updates["manifests"] = tuple(
            p if p.is_absolute() else root / p for p in (Path(m) for m in _strings(data["manifests"], key="manifests"))
        )

    selection = _section(data, "selection")
    if "profiles" in selection:
        updates["profiles"] = frozenset(_strings(selection["profiles"], key="selection.profiles"))
    if "supported_features" in selection:
        updates["supported_features"] = frozenset(
            _strings(selection["supported_features"], key="selection.supported_features")
        )
    if "skip_tests" in selection:
        updates["skip_tests"] = frozenset(_strings(selection["skip_tests"], key="selection.skip_tests"))
    if selection.get("run_test") is not None:
        updates["run_test"] = str(selection["run_test"])
    if "enable_all_supported_features" in selection:
        updates["enable_all_supported_features"] = bool(selection["enable_all_supported_features"])

    implementation = _section(data, "implementation")
    if implementation:
        impl_updates: dict[str, Any] = {}
        for key in ("organization", "project", "url", "version"):
            if implementation.get(key) is not None:
                impl_updates[key] = str(implementation[key])
        if "contact" in implementation:
            impl_updates["contact"] = _strings(implementation["contact"], key="implementation.contact")
        updates["implementation"] = replace(base.implementation, **impl_updates)

    report = _section(data, "report")
    if report.get("dir") is not None:
        updates["report_dir"] = Path(str(report["dir"]))
    if report.get("format") is not None:
        updates["report_format"] = str(report["format"])
    if report.get("mode") is not None:
        updates["mode"] = str(report["mode"])

    timeouts = _section(data, "timeouts")
    if timeouts:
        updates["timeouts"] = replace(base.timeouts, **{key: float(value) for key, value in timeouts.items()})

    probe = _section(data, "probe")
    if probe:
        probe_updates = dict(probe)
        if "port" in probe_updates:
            probe_updates["port"] = int(probe_updates["port"])
        updates["probe"] = replace(base.probe, **probe_updates)

    return replace(base, **updates)


def load_settings(
    config_path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> HarnessSettings:
    if config_path is None:
        settings = HarnessSettings()
    else:
        data = YAML(typ="safe", pure=True).load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        settings = settings_from_mapping(data, base_dir=config_path.parent)
    return settings.with_env(env).with_overrides(**overrides)
