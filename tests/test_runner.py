from __future__ import annotations

import sys
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch


class _RunnerTestBase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "conformance" / "python" / "src"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        import k8s_conformance.runner as runner  # noqa: E402
        import k8s_conformance.suite as suite  # noqa: E402
        from k8s_conformance.config import TimeoutConfig  # noqa: E402
        import k8s_conformance.report as report  # noqa: E402
        from k8s_conformance.errors import SchemaNotRegistered, SubjectUnreachable, TestExecutionError  # noqa: E402
        from k8s_conformance.schemes import SchemeRegistry, install_core  # noqa: E402
        from k8s_conformance.models import OutcomeStatus, SubjectEndpoint  # noqa: E402
        from k8s_conformance.selection import TestSelection  # noqa: E402

        cls.runner = runner
        cls.suite = suite
        cls.report = report
        cls.SchemaNotRegistered = SchemaNotRegistered
        cls.SchemeRegistry = SchemeRegistry
        cls.install_core = staticmethod(install_core)
        cls.TimeoutConfig = TimeoutConfig
        cls.SubjectUnreachable = SubjectUnreachable
        cls.TestExecutionError = TestExecutionError
        cls.OutcomeStatus = OutcomeStatus
        cls.SubjectEndpoint = SubjectEndpoint
        cls.TestSelection = TestSelection

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def setUp(self) -> None:
        self.calls: list[str] = []
        self.endpoint = self.SubjectEndpoint(host="127.0.0.1", port=9000)
        probe = patch.object(self.runner, "wait_for_body")
        self.wait_for_body = probe.start()
        self.addCleanup(probe.stop)

    def _case(self, name: str, profiles=("HTTP",), features=(), body=None, parallel=False, manifests=()):  # type: ignore[no-untyped-def]
        def run(ctx) -> None:  # type: ignore[no-untyped-def]
            self.calls.append(name)
            if body is not None:
                body(ctx)

        return self.suite.ConformanceTest(
            short_name=name,
            description=f"{name} test",
            test=run,
            profiles=frozenset(profiles),
            features=frozenset(features),
            parallel=parallel,
            manifests=tuple(manifests),
        )

    def _registry(self, tests):  # type: ignore[no-untyped-def]
        return self.suite.StaticRegistry(
            tests,
            info=self.suite.RegistryInfo(api_version="v1.3.0", channel="experimental", version="v1.3.0"),
        )

    def _run(self, registry, selection=None, max_parallel: int = 1, client=None):  # type: ignore[no-untyped-def]
        runner = self.runner.ConformanceRunner(
            registry,
            options=self.runner.RunnerOptions(
                timeouts=self.TimeoutConfig(probe_s=0.1, poll_interval_s=0.01),
                max_parallel=max_parallel,
            ),
        )
        return runner.run(
            client or MagicMock(),
            MagicMock(),
            self.endpoint,
            selection or self.TestSelection(),
            "traefik/traefik@dev",
        )


class TestConformanceRunner(_RunnerTestBase):
    def test_aborting_test_is_isolated(self) -> None:
        def boom(ctx) -> None:  # type: ignore[no-untyped-def]
            raise RuntimeError("kaboom")

        registry = self._registry([self._case("First"), self._case("Aborts", body=boom), self._case("Last")])
        outcomes = self._run(registry)

        self.assertEqual(self.calls, ["First", "Aborts", "Last"])
        self.assertEqual(outcomes.names(), ["Aborts", "First", "Last"])
        aborted = outcomes.get("Aborts")
        self.assertEqual(aborted.status, self.OutcomeStatus.FAILED)
        self.assertEqual(aborted.message, "RuntimeError: kaboom")
        self.assertEqual(outcomes.get("First").status, self.OutcomeStatus.PASSED)
        self.assertEqual(outcomes.get("Last").status, self.OutcomeStatus.PASSED)

    def test_interpreter_level_exits_are_isolated(self) -> None:
        class FrameworkOutcome(BaseException):
            pass

        def exits(ctx) -> None:  # type: ignore[no-untyped-def]
            raise SystemExit("helper called exit")

        def fails(ctx) -> None:  # type: ignore[no-untyped-def]
            raise FrameworkOutcome("failed through a test framework helper")

        registry = self._registry([self._case("Exits", body=exits), self._case("Fails", body=fails), self._case("Last")])
        outcomes = self._run(registry)

        self.assertEqual(self.calls, ["Exits", "Fails", "Last"])
        self.assertEqual(outcomes.get("Exits").status, self.OutcomeStatus.FAILED)
        self.assertEqual(outcomes.get("Exits").message, "SystemExit: helper called exit")
        self.assertEqual(outcomes.get("Fails").status, self.OutcomeStatus.FAILED)
        self.assertEqual(outcomes.get("Last").status, self.OutcomeStatus.PASSED)

    def test_keyboard_interrupt_stops_the_run(self) -> None:
        def interrupted(ctx) -> None:  # type: ignore[no-untyped-def]
            raise KeyboardInterrupt

        registry = self._registry([self._case("Interrupted", body=interrupted), self._case("Never")])
        with self.assertRaises(KeyboardInterrupt):
            self._run(registry)
        self.assertEqual(self.calls, ["Interrupted"])

    def test_assertion_failure_without_message_has_diagnostic(self) -> None:
        def fails(ctx) -> None:  # type: ignore[no-untyped-def]
            raise AssertionError()

        outcomes = self._run(self._registry([self._case("Fails", body=fails)]))
        self.assertEqual(outcomes.get("Fails").status, self.OutcomeStatus.FAILED)
        self.assertEqual(outcomes.get("Fails").message, "AssertionError")

    def test_only_selected_profile_runs(self) -> None:
        tests = [
            self._case("HTTPRouteSimple", profiles=("HTTP",)),
            self._case("TLSRouteSimple", profiles=("TLS",)),
            self._case("HTTPRouteHeaders", profiles=("HTTP",)),
            self._case("TLSRouteInvalid", profiles=("TLS",)),
            self._case("HTTPRouteWeight", profiles=("HTTP",)),
        ]
        outcomes = self._run(self._registry(tests), self.TestSelection(profiles=frozenset({"HTTP"})))
        self.assertEqual(outcomes.names(), ["HTTPRouteHeaders", "HTTPRouteSimple", "HTTPRouteWeight"])
        self.assertEqual(self.calls, ["HTTPRouteSimple", "HTTPRouteHeaders", "HTTPRouteWeight"])

    def test_unmet_features_are_skipped_not_failed(self) -> None:
        tests = [self._case("Mirror", features=("HTTPRouteRequestMirror",)), self._case("Simple")]
        outcomes = self._run(self._registry(tests))
        mirror = outcomes.get("Mirror")
        self.assertEqual(mirror.status, self.OutcomeStatus.SKIPPED)
        self.assertIn("HTTPRouteRequestMirror", mirror.message)
        self.assertEqual(self.calls, ["Simple"])

    def test_runtime_skip_is_recorded(self) -> None:
        def skip(ctx) -> None:  # type: ignore[no-untyped-def]
            raise self.suite.TestSkipped("needs IPv6")

        outcomes = self._run(self._registry([self._case("V6", body=skip)]))
        self.assertEqual(outcomes.get("V6").status, self.OutcomeStatus.SKIPPED)
        self.assertEqual(outcomes.get("V6").message, "needs IPv6")

    def test_tests_run_grouped_by_profile_name(self) -> None:
        tests = [
            self._case("TLSOne", profiles=("TLS",)),
            self._case("HTTPOne", profiles=("HTTP",)),
            self._case("Both", profiles=("TLS", "HTTP")),
        ]
        outcomes = self._run(self._registry(tests))
        self.assertEqual(self.calls, ["HTTPOne", "Both", "TLSOne"])
        self.assertEqual(len(outcomes), 3)

    def test_outcomes_are_frozen_after_run(self) -> None:
        outcomes = self._run(self._registry([self._case("Only")]))
        self.assertTrue(outcomes.frozen)
        with self.assertRaises(RuntimeError):
            outcomes.record(outcomes.get("Only"))

    def test_unreachable_subject_never_runs_tests(self) -> None:
        self.wait_for_body.side_effect = self.SubjectUnreachable("probe timed out")
        registry = self._registry([self._case("Never")])
        with patch.object(registry, "setup") as setup, self.assertRaises(self.SubjectUnreachable):
            self._run(registry)
        setup.assert_not_called()
        self.assertEqual(self.calls, [])

    def test_unregistered_manifest_type_aborts_before_any_test(self) -> None:
        schemes = self.SchemeRegistry()
        self.install_core(schemes)
        widget = {"apiVersion": "example.io/v1", "kind": "Widget", "metadata": {"name": "w"}}
        namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "ns"}}
        registry = self._registry(
            [self._case("First", manifests=[namespace]), self._case("NeedsWidget", manifests=[namespace, widget])]
        )
        with patch.object(registry, "setup") as setup, self.assertRaises(self.SchemaNotRegistered) as ctx:
            self._run(registry, client=MagicMock(registry=schemes))
        self.assertIn("example.io/v1", str(ctx.exception))
        setup.assert_not_called()
        self.assertEqual(self.calls, [])

    def test_registered_manifest_types_run_normally(self) -> None:
        schemes = self.SchemeRegistry()
        self.install_core(schemes)
        namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "ns"}}
        outcomes = self._run(self._registry([self._case("First", manifests=[namespace])]), client=MagicMock(registry=schemes))
        self.assertEqual(outcomes.get("First").status, self.OutcomeStatus.PASSED)

    def test_tests_without_profile_reach_the_report(self) -> None:
        def fails(ctx) -> None:  # type: ignore[no-untyped-def]
            raise AssertionError("no profile")

        registry = self._registry([self._case("NoProfile", profiles=(), body=fails), self._case("HTTPOne")])
        selection = self.TestSelection()
        outcomes = self._run(registry, selection)
        self.assertEqual(outcomes.names(), ["HTTPOne", "NoProfile"])
        self.assertTrue(outcomes.failed)

        metadata = self.report.ReportMetadata(
            implementation=self.report.Implementation(organization="traefik", project="traefik", url="", version="dev", contact=[]),
            api_version="v1.3.0",
            channel="experimental",
            profiles=tuple(selection.exercised_profiles(registry.tests())),
        )
        doc = self.report.generate(outcomes, metadata)
        failed = [name for profile in doc.profiles for name in profile.failed_tests]
        self.assertEqual(failed, ["NoProfile"])
        self.assertEqual(sorted(r.name for p in doc.profiles for r in p.results), ["HTTPOne", "NoProfile"])

    def test_setup_failure_is_fatal(self) -> None:
        registry = self._registry([self._case("Never")])
        with patch.object(registry, "setup", side_effect=RuntimeError("no gatewayclass")):
            with self.assertRaises(self.TestExecutionError) as ctx:
                self._run(registry)
        self.assertIn("no gatewayclass", str(ctx.exception))
        self.assertEqual(self.calls, [])

    def test_parallel_tests_use_bounded_pool(self) -> None:
        active = 0
        peak = 0
        lock = threading.Lock()
        barrier = threading.Barrier(2, timeout=5)

        def concurrent(ctx) -> None:  # type: ignore[no-untyped-def]
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            barrier.wait()
            with lock:
                active -= 1

        tests = [
            self._case("Serial"),
            self._case("ParallelA", body=concurrent, parallel=True),
            self._case("ParallelB", body=concurrent, parallel=True),
        ]
        outcomes = self._run(self._registry(tests), max_parallel=2)
        self.assertEqual(peak, 2)
        self.assertEqual(outcomes.counts(), {"passed": 3, "failed": 0, "skipped": 0})


if __name__ == "__main__":
    unittest.main()
