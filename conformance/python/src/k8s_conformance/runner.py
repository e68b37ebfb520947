from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

from k8s_conformance.client import ObjectClient, RestConfig
from k8s_conformance.config import ProbeConfig, TimeoutConfig
from k8s_conformance.errors import TestExecutionError
from k8s_conformance.http import HttpClient, wait_for_body
from k8s_conformance.models import Outcome, OutcomeSet, OutcomeStatus, SubjectEndpoint
from k8s_conformance.report import NO_PROFILE
from k8s_conformance.selection import TestSelection, missing_features, skip_reason
from k8s_conformance.suite import ConformanceTest, TestContext, TestRegistry, TestSkipped

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunnerOptions:
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    max_parallel: int = 1


def _diagnostic(exc: BaseException) -> str:
    text = str(exc).strip()
    if not text:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {text}"


def plan_profiles(tests: Sequence[ConformanceTest], profiles: Sequence[str]) -> list[tuple[str, list[ConformanceTest]]]:
    ordered = sorted(profiles)
    groups: dict[str, list[ConformanceTest]] = {name: [] for name in ordered}
    leftovers: list[ConformanceTest] = []
    for test in tests:
        home = next((name for name in ordered if name in test.profiles), None)
        if home is None:
            leftovers.append(test)
        else:
            groups[home].append(test)
    plan = [(name, groups[name]) for name in ordered if groups[name]]
    if leftovers:
        plan.append((NO_PROFILE, leftovers))
    return plan


class ConformanceRunner:
    def __init__(self, registry: TestRegistry, *, options: RunnerOptions | None = None) -> None:
        self._registry = registry
        self._options = options or RunnerOptions()

    @property
    def registry(self) -> TestRegistry:
        return self._registry

    def probe(self, endpoint: SubjectEndpoint) -> HttpClient:
        http = HttpClient(base_url=endpoint.base_url(), timeout_s=self._options.timeouts.http_request_s)
        wait_for_body(
            http,
            self._options.probe.path,
            contains=self._options.probe.contains,
            timeout_s=self._options.timeouts.probe_s,
            interval_s=self._options.timeouts.poll_interval_s,
        )
        return http

    def run(
        self,
        client: ObjectClient,
        rest_config: RestConfig,
        endpoint: SubjectEndpoint,
        selection: TestSelection,
        implementation: str,
    ) -> OutcomeSet:
        http = self.probe(endpoint)
        context = TestContext(
            client=client,
            rest_config=rest_config,
            endpoint=endpoint,
            http=http,
            implementation=implementation,
            timeouts=self._options.timeouts,
        )

        selected = selection.select(self._registry.tests())
        self.check_schemes(client, selected)

        try:
            self._registry.setup(context)
        except Exception as exc:
            raise TestExecutionError(f"Test registry setup failed: {_diagnostic(exc)}") from exc

        supported = selection.effective_features(selected)
        logger.info("Running %d selected tests against %s (%s)", len(selected), endpoint, implementation)

        outcomes = OutcomeSet()
        for profile, group in plan_profiles(selected, selection.exercised_profiles(selected)):
            logger.info("Profile %s: %d tests", profile, len(group))
            self._run_group(context, group, supported, outcomes)

        counts = outcomes.counts()
        logger.info(
            "Finished: %d passed, %d failed, %d skipped",
            counts["passed"],
            counts["failed"],
            counts["skipped"],
        )
        return outcomes.freeze()

    def check_schemes(self, client: ObjectClient, tests: Sequence[ConformanceTest]) -> None:
        """Resolve every type the selected tests apply; SchemaNotRegistered aborts the run."""
        for test in tests:
            for doc in test.manifests:
                client.registry.resolve(doc)

    def _run_group(
        self,
        context: TestContext,
        group: list[ConformanceTest],
        supported: frozenset[str],
        outcomes: OutcomeSet,
    ) -> None:
        if self._options.max_parallel <= 1:
            for test in group:
                outcomes.record(self.execute(context, test, supported))
            return

        concurrent = [t for t in group if t.parallel]
        for test in group:
            if not test.parallel:
                outcomes.record(self.execute(context, test, supported))
        if not concurrent:
            return
        with ThreadPoolExecutor(max_workers=self._options.max_parallel) as pool:
            for outcome in pool.map(lambda t: self.execute(context, t, supported), concurrent):
                outcomes.record(outcome)

    def execute(self, context: TestContext, test: ConformanceTest, supported: frozenset[str]) -> Outcome:
        profiles = tuple(sorted(test.profiles))
        features = tuple(sorted(test.features))

        missing = missing_features(test, supported)
        if missing:
            logger.info("SKIP %s (%s)", test.short_name, skip_reason(missing))
            return Outcome(
                name=test.short_name,
                status=OutcomeStatus.SKIPPED,
                message=skip_reason(missing),
                profiles=profiles,
                features=features,
            )

        started = time.time()
        try:
            self._registry.run(context.for_test(test), test)
        except TestSkipped as exc:
            logger.info("SKIP %s (%s)", test.short_name, exc)
            return Outcome(
                name=test.short_name,
                status=OutcomeStatus.SKIPPED,
                message=str(exc) or "skipped by test",
                profiles=profiles,
                features=features,
            )
        except KeyboardInterrupt:
            raise
        except BaseException as exc:
            logger.warning("FAIL %s: %s", test.short_name, _diagnostic(exc), exc_info=not isinstance(exc, AssertionError))
            return Outcome(
                name=test.short_name,
                status=OutcomeStatus.FAILED,
                message=_diagnostic(exc),
                profiles=profiles,
                features=features,
            )

        logger.info("PASS %s (%.1fs)", test.short_name, time.time() - started)
        return Outcome(
            name=test.short_name,
            status=OutcomeStatus.PASSED,
            profiles=profiles,
            features=features,
        )
