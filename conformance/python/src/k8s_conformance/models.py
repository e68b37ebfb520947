from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator


def _omit_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(eq=False)
class ClusterHandle:
    run_id: str
    network: Any
    container: Any
    subject_namespace: str
    subject_deployment: str
    kubeconfig: dict[str, Any] | None = None
    loaded_images: set[str] = field(default_factory=set)
    applied_manifests: list[str] = field(default_factory=list)
    failed: bool = False
    released: bool = False

    @property
    def network_name(self) -> str:
        return getattr(self.network, "name", None) or f"k8s-conformance-{self.run_id}"

    @property
    def server_url(self) -> str | None:
        if not self.kubeconfig:
            return None
        clusters = self.kubeconfig.get("clusters") or []
        if not clusters:
            return None
        return clusters[0].get("cluster", {}).get("server")

    def mark_failed(self) -> None:
        self.failed = True


@dataclass(frozen=True, slots=True)
class SubjectEndpoint:
    host: str
    port: int
    scheme: str = "http"

    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def url(self, path: str = "/") -> str:
        return self.base_url() + "/" + path.lstrip("/")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class Outcome:
    name: str
    status: OutcomeStatus
    message: str | None = None
    profiles: tuple[str, ...] = ()
    features: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return _omit_none(
            {
                "name": self.name,
                "status": self.status.value,
                "message": self.message,
                "profiles": list(self.profiles),
                "features": list(self.features),
            }
        )


class OutcomeSet:
    def __init__(self) -> None:
        self._outcomes: dict[str, Outcome] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            if self._frozen:
                raise RuntimeError("OutcomeSet is read-only once the run has completed")
            self._outcomes[outcome.name] = outcome

    def freeze(self) -> "OutcomeSet":
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Outcome | None:
        return self._outcomes.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._outcomes

    def __iter__(self) -> Iterator[Outcome]:
        return iter(list(self._outcomes.values()))

    def __len__(self) -> int:
        return len(self._outcomes)

    def names(self) -> list[str]:
        return sorted(self._outcomes)

    def with_status(self, status: OutcomeStatus) -> list[Outcome]:
        return sorted((o for o in self._outcomes.values() if o.status == status), key=lambda o: o.name)

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in OutcomeStatus}
        for outcome in self._outcomes.values():
            out[outcome.status.value] += 1
        return out

    @property
    def failed(self) -> bool:
        return any(o.status == OutcomeStatus.FAILED for o in self._outcomes.values())


@dataclass(frozen=True, slots=True)
class DiagnosticsBundle:
    cluster_logs: str | None = None
    subject_logs: str | None = None
    errors: tuple[str, ...] = ()

    def render(self) -> str:
        chunks: list[str] = []
        if self.cluster_logs is not None:
            chunks.append("=== cluster logs ===")
            chunks.append(self.cluster_logs)
        if self.subject_logs is not None:
            chunks.append("=== subject logs ===")
            chunks.append(self.subject_logs)
        for err in self.errors:
            chunks.append(f"capture error: {err}")
        return "\n".join(chunks)
