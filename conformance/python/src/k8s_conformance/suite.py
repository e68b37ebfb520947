from __future__ import annotations

import abc
import importlib
import logging
from dataclasses import dataclass, field
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

from k8s_conformance.config import TimeoutConfig
from k8s_conformance.manifests import load_documents

if TYPE_CHECKING:
    from k8s_conformance.client import ObjectClient, RestConfig
    from k8s_conformance.http import HttpClient
    from k8s_conformance.models import SubjectEndpoint


class TestSkipped(Exception):
    __test__ = False


@dataclass(frozen=True)
class ConformanceTest:
    __test__ = False

    short_name: str
    description: str
    test: Callable[["TestContext"], None]
    profiles: frozenset[str] = frozenset()
    features: frozenset[str] = frozenset()
    manifests: tuple[dict[str, Any], ...] = ()
    parallel: bool = False

    def __post_init__(self) -> None:
        if not self.short_name:
            raise ValueError("ConformanceTest.short_name must not be empty")
        object.__setattr__(self, "profiles", frozenset(self.profiles))
        object.__setattr__(self, "features", frozenset(self.features))


@dataclass
class TestContext:
    __test__ = False

    client: "ObjectClient"
    rest_config: "RestConfig"
    endpoint: "SubjectEndpoint"
    http: "HttpClient"
    implementation: str
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    test: ConformanceTest | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("k8s_conformance.tests"))

    def for_test(self, test: ConformanceTest) -> "TestContext":
        return TestContext(
            client=self.client,
            rest_config=self.rest_config,
            endpoint=self.endpoint,
            http=self.http,
            implementation=self.implementation,
            timeouts=self.timeouts,
            test=test,
            logger=logging.getLogger(f"k8s_conformance.tests.{test.short_name}"),
        )


@dataclass(frozen=True)
class RegistryInfo:
    api_version: str
    channel: str
    version: str


class TestRegistry(abc.ABC):
    __test__ = False

    @abc.abstractmethod
    def tests(self) -> Sequence[ConformanceTest]:
        raise NotImplementedError

    @abc.abstractmethod
    def setup(self, context: TestContext) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def run(self, context: TestContext, test: ConformanceTest) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def report(self) -> RegistryInfo:
        raise NotImplementedError


def _iter_manifest_files(root: Traversable) -> list[Traversable]:
    out: list[Traversable] = []
    for entry in sorted(root.iterdir(), key=lambda e: e.name):
        if entry.is_dir():
            out.extend(_iter_manifest_files(entry))
        elif entry.name.endswith((".yaml", ".yml")):
            out.append(entry)
    return out


class StaticRegistry(TestRegistry):
    def __init__(
        self,
        tests: Sequence[ConformanceTest],
        *,
        info: RegistryInfo,
        base_manifests: Traversable | Path | None = None,
    ) -> None:
        self._tests = list(tests)
        self._info = info
        self._base_manifests = base_manifests

    def tests(self) -> Sequence[ConformanceTest]:
        return list(self._tests)

    def base_documents(self) -> list[dict[str, Any]]:
        if self._base_manifests is None:
            return []
        docs: list[dict[str, Any]] = []
        for entry in _iter_manifest_files(self._base_manifests):
            docs.extend(load_documents(entry.read_text(encoding="utf-8"), source=entry.name))
        return docs

    def setup(self, context: TestContext) -> None:
        docs = self.base_documents()
        if docs:
            context.logger.info("Applying %d base documents", len(docs))
            context.client.apply_all(docs)

    def run(self, context: TestContext, test: ConformanceTest) -> None:
        if test.manifests:
            context.client.apply_all(test.manifests)
        test.test(context)

    def report(self) -> RegistryInfo:
        return self._info


def load_registry(ref: str) -> TestRegistry:
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid registry reference (expected 'module:attribute'): {ref}")
    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"Module {module_name} has no attribute {attr}") from exc
    registry = target() if callable(target) and not isinstance(target, TestRegistry) else target
    if not isinstance(registry, TestRegistry):
        raise TypeError(f"{ref} did not provide a TestRegistry (got {type(registry).__name__})")
    return registry
