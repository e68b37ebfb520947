from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from k8s_conformance.suite import ConformanceTest


@dataclass(frozen=True)
class TestSelection:
    __test__ = False

    profiles: frozenset[str] = frozenset()
    supported_features: frozenset[str] = frozenset()
    enable_all_supported_features: bool = False
    run_test: str | None = None
    skip_tests: frozenset[str] = frozenset()

    def matches_name(self, short_name: str) -> bool:
        if short_name in self.skip_tests:
            return False
        if not self.run_test:
            return True
        return short_name == self.run_test or fnmatchcase(short_name, self.run_test)

    def matches_profiles(self, profiles: Iterable[str]) -> bool:
        if not self.profiles:
            return True
        return bool(self.profiles.intersection(profiles))

    def selects(self, test: "ConformanceTest") -> bool:
        return self.matches_profiles(test.profiles) and self.matches_name(test.short_name)

    def select(self, tests: Iterable["ConformanceTest"]) -> list["ConformanceTest"]:
        seen: set[str] = set()
        out: list[ConformanceTest] = []
        for test in tests:
            if test.short_name in seen:
                raise ValueError(f"Duplicate test name in registry: {test.short_name}")
            seen.add(test.short_name)
            if self.selects(test):
                out.append(test)
        return out

    def effective_features(self, selected: Iterable["ConformanceTest"]) -> frozenset[str]:
        if not self.enable_all_supported_features:
            return self.supported_features
        features: set[str] = set(self.supported_features)
        for test in selected:
            features.update(test.features)
        return frozenset(features)

    def exercised_profiles(self, selected: Iterable["ConformanceTest"]) -> list[str]:
        if self.profiles:
            return sorted(self.profiles)
        names: set[str] = set()
        for test in selected:
            names.update(test.profiles)
        return sorted(names)


def missing_features(test: "ConformanceTest", supported: frozenset[str]) -> list[str]:
    return sorted(set(test.features) - supported)


def skip_reason(missing: list[str]) -> str:
    return "unsupported features: " + ", ".join(missing)
