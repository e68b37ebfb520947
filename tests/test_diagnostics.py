from __future__ import annotations

import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import docker.errors
import requests.exceptions
from docker.models.containers import ExecResult


class TestDiagnostics(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "conformance" / "python" / "src"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        import k8s_conformance.diagnostics as diagnostics  # noqa: E402
        from k8s_conformance.errors import TeardownFailure  # noqa: E402
        from k8s_conformance.models import ClusterHandle  # noqa: E402

        cls.diagnostics = diagnostics
        cls.TeardownFailure = TeardownFailure
        cls.ClusterHandle = ClusterHandle

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def setUp(self) -> None:
        self.container = MagicMock()
        self.network = MagicMock()
        self.container.logs.return_value = b"k3s started"
        self.container.exec_run.return_value = ExecResult(0, b"traefik listening on :8000")
        self.handle = self.ClusterHandle(
            run_id="r1",
            network=self.network,
            container=self.container,
            subject_namespace="traefik",
            subject_deployment="traefik",
        )

    def test_capture_collects_cluster_and_subject_logs(self) -> None:
        bundle = self.diagnostics.capture_diagnostics(self.handle)
        self.assertEqual(bundle.cluster_logs, "k3s started")
        self.assertEqual(bundle.subject_logs, "traefik listening on :8000")
        self.assertEqual(bundle.errors, ())
        self.container.exec_run.assert_called_once_with(["kubectl", "logs", "-n", "traefik", "deployments/traefik"])
        self.assertIn("=== subject logs ===", bundle.render())

    def test_capture_is_best_effort(self) -> None:
        self.container.logs.side_effect = docker.errors.APIError("gone")
        self.container.exec_run.return_value = ExecResult(1, b"error: deployments.apps not found")
        bundle = self.diagnostics.capture_diagnostics(self.handle)
        self.assertIsNone(bundle.cluster_logs)
        self.assertIsNone(bundle.subject_logs)
        self.assertEqual(len(bundle.errors), 2)

    def test_finalize_is_idempotent(self) -> None:
        first = self.diagnostics.finalize(self.handle, run_failed=True, verbose=False)
        second = self.diagnostics.finalize(self.handle, run_failed=True, verbose=False)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertTrue(self.handle.released)
        self.container.remove.assert_called_once_with(force=True, v=True)
        self.network.remove.assert_called_once_with()

    def test_verbose_captures_even_on_success(self) -> None:
        bundle = self.diagnostics.finalize(self.handle, run_failed=False, verbose=True)
        self.assertEqual(bundle.cluster_logs, "k3s started")

    def test_quiet_success_skips_capture(self) -> None:
        self.assertIsNone(self.diagnostics.finalize(self.handle, run_failed=False, verbose=False))
        self.container.logs.assert_not_called()

    def test_release_tolerates_already_removed_resources(self) -> None:
        self.container.remove.side_effect = docker.errors.NotFound("no such container")
        self.network.remove.side_effect = docker.errors.NotFound("no such network")
        self.diagnostics.release(self.handle)
        self.assertIsNone(self.handle.container)
        self.assertIsNone(self.handle.network)

    def test_release_reports_every_failure_once(self) -> None:
        self.container.remove.side_effect = docker.errors.APIError("device busy")
        self.network.remove.side_effect = docker.errors.APIError("active endpoints")
        with self.assertRaises(self.TeardownFailure) as ctx:
            self.diagnostics.release(self.handle)
        self.assertIn("container", ctx.exception.details["errors"])
        self.assertIn("network", ctx.exception.details["errors"])

        self.diagnostics.release(self.handle)
        self.container.remove.assert_called_once_with(force=True, v=True)


    def test_transport_error_still_removes_network(self) -> None:
        self.container.remove.side_effect = requests.exceptions.ConnectionError("connection aborted")
        with self.assertLogs("k8s_conformance", level="ERROR"), self.assertRaises(self.TeardownFailure) as ctx:
            self.diagnostics.release(self.handle)

        self.network.remove.assert_called_once_with()
        self.assertIn("container: connection aborted", ctx.exception.details["errors"])
        self.assertNotIn("network", ctx.exception.details["errors"])
        self.assertTrue(self.handle.released)


if __name__ == "__main__":
    unittest.main()
