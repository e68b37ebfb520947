from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

CONFIG = """\
registry: gateway_suite:REGISTRY
manifests:
  - manifests/crds.yaml
  - /abs/subject.yaml
subject:
  image: traefik/traefik:v3.1
selection:
  profiles: [GATEWAY-HTTP]
  supported_features:
    - Gateway
    - HTTPRoute
  skip_tests: [HTTPRouteWeight]
implementation:
  version: v3.1.0
  contact: "@someone"
report:
  dir: out
  format: json
timeouts:
  subject_ready_s: 90
probe:
  port: "8080"
"""


class TestSettings(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "conformance" / "python" / "src"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        import k8s_conformance.config as config  # noqa: E402

        cls.config = config

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)
        self.config_path = self.tmp / "conformance.yaml"
        self.config_path.write_text(CONFIG, encoding="utf-8")

    def test_defaults_are_opt_out(self) -> None:
        settings = self.config.load_settings(env={})
        self.assertFalse(settings.enabled)
        self.assertEqual(settings.profiles, frozenset(self.config.DEFAULT_PROFILES))
        self.assertEqual(settings.subject_image, "traefik/traefik:latest")
        self.assertEqual(settings.timeouts.subject_ready_s, 30.0)

    def test_file_values_are_applied(self) -> None:
        settings = self.config.load_settings(self.config_path, env={})
        self.assertEqual(settings.registry, "gateway_suite:REGISTRY")
        self.assertEqual(settings.manifests, (self.tmp / "manifests" / "crds.yaml", Path("/abs/subject.yaml")))
        self.assertEqual(settings.subject_image, "traefik/traefik:v3.1")
        self.assertEqual(settings.profiles, frozenset({"GATEWAY-HTTP"}))
        self.assertEqual(settings.supported_features, frozenset({"Gateway", "HTTPRoute"}))
        self.assertEqual(settings.skip_tests, frozenset({"HTTPRouteWeight"}))
        self.assertEqual(settings.implementation.version, "v3.1.0")
        self.assertEqual(settings.implementation.contact, ("@someone",))
        self.assertEqual(settings.implementation.organization, "traefik")
        self.assertEqual(settings.report_dir, Path("out"))
        self.assertEqual(settings.report_format, "json")
        self.assertEqual(settings.timeouts.subject_ready_s, 90.0)
        self.assertEqual(settings.timeouts.cluster_start_s, 120.0)
        self.assertEqual(settings.probe.port, 8080)

    def test_env_overrides_file_and_flags_override_env(self) -> None:
        env = {
            "K8S_CONFORMANCE": "1",
            "K8S_CONFORMANCE_RUN_TEST": "HTTPRouteSimple",
            "K8S_CONFORMANCE_SUBJECT_VERSION": "v3.2.0",
            "K8S_CONFORMANCE_SHOW_LOG": "false",
        }
        settings = self.config.load_settings(self.config_path, env=env)
        self.assertTrue(settings.enabled)
        self.assertFalse(settings.show_log)
        self.assertEqual(settings.run_test, "HTTPRouteSimple")
        self.assertEqual(settings.implementation.version, "v3.2.0")

        flagged = self.config.load_settings(
            self.config_path,
            env=env,
            run_test="TLSRouteSimple",
            implementation_version="v9.9.9",
            report_format=None,
        )
        self.assertEqual(flagged.run_test, "TLSRouteSimple")
        self.assertEqual(flagged.implementation.version, "v9.9.9")
        self.assertEqual(flagged.report_format, "json")

    def test_selection_reflects_settings(self) -> None:
        settings = self.config.load_settings(self.config_path, env={}, enable_all_supported_features=True)
        selection = settings.selection()
        self.assertEqual(selection.profiles, frozenset({"GATEWAY-HTTP"}))
        self.assertTrue(selection.enable_all_supported_features)
        self.assertEqual(selection.skip_tests, frozenset({"HTTPRouteWeight"}))

    def test_unknown_override_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.config.load_settings(env={}, no_such_setting=True)

    def test_malformed_sections_are_rejected(self) -> None:
        self.config_path.write_text("selection: [HTTP]\n", encoding="utf-8")
        with self.assertRaises(ValueError):
            self.config.load_settings(self.config_path, env={})
        self.config_path.write_text("- a\n- b\n", encoding="utf-8")
        with self.assertRaises(ValueError):
            self.config.load_settings(self.config_path, env={})


    def test_unknown_report_format_is_rejected_before_running(self) -> None:
        self.config_path.write_text(CONFIG.replace("format: json", "format: xml"), encoding="utf-8")
        with self.assertRaises(ValueError) as ctx:
            self.config.load_settings(self.config_path, env={})
        self.assertIn("xml", str(ctx.exception))
        with self.assertRaises(ValueError):
            self.config.load_settings(env={}, report_format="xml")


if __name__ == "__main__":
    unittest.main()
