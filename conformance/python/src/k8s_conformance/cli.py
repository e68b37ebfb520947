from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from k8s_conformance import REPORT_API_VERSION, __version__
from k8s_conformance.config import ENV_ENABLE, HarnessSettings, load_settings
from k8s_conformance.report import REPORT_FORMATS

if TYPE_CHECKING:
    from k8s_conformance.suite import TestRegistry

logger = logging.getLogger("k8s_conformance")

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_HARNESS_ERROR = 2


def _split_csv(values: list[str] | None) -> frozenset[str] | None:
    if not values:
        return None
    out: set[str] = set()
    for raw in values:
        out.update(item.strip() for item in raw.split(",") if item.strip())
    return frozenset(out)


def _settings_from_args(args: argparse.Namespace) -> HarnessSettings:
    overrides: dict[str, Any] = {
        "registry": args.registry,
        "profiles": _split_csv(args.profile),
        "supported_features": _split_csv(args.supported_feature),
        "skip_tests": _split_csv(args.skip_test),
        "run_test": args.run_test,
        "implementation_version": args.subject_version,
    }
    if getattr(args, "all_features", False):
        overrides["enable_all_supported_features"] = True
    if args.command == "run":
        overrides.update(
            {
                "subject_image": args.subject_image,
                "subject_namespace": args.subject_namespace,
                "subject_deployment": args.subject_deployment,
                "cluster_image": args.cluster_image,
                "manifests": tuple(Path(p) for p in args.manifest) if args.manifest else None,
                "report_dir": Path(args.report_dir) if args.report_dir else None,
                "report_format": args.format,
                "mode": args.mode,
                "max_parallel": args.max_parallel,
            }
        )
        if args.enable:
            overrides["enabled"] = True
        if args.show_log:
            overrides["show_log"] = True
    return load_settings(Path(args.config) if args.config else None, **overrides)


def _load_registry(settings: HarnessSettings) -> "TestRegistry":
    from k8s_conformance.suite import load_registry

    if not settings.registry:
        raise SystemExit("No test registry configured (use --registry module:attribute)")
    try:
        registry = load_registry(settings.registry)
    except (ImportError, ValueError, TypeError) as exc:
        raise SystemExit(f"Cannot load test registry {settings.registry}: {exc}") from exc

    names = [test.short_name for test in registry.tests()]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise SystemExit(f"Test registry {settings.registry} has duplicate test names: {', '.join(duplicates)}")
    return registry


def _cmd_list(settings: HarnessSettings) -> int:
    from k8s_conformance.selection import missing_features, skip_reason

    registry = _load_registry(settings)
    selection = settings.selection()
    selected = selection.select(registry.tests())
    supported = selection.effective_features(selected)
    info = registry.report()
    lines = [f"registry={info.version} api={info.api_version} channel={info.channel} selected={len(selected)}"]
    for test in selected:
        missing = missing_features(test, supported)
        status = "skip" if missing else "run"
        line = f"- {status} {test.short_name} [{','.join(sorted(test.profiles))}]"
        if missing:
            line += f": {skip_reason(missing)}"
        lines.append(line)
    sys.stdout.write("\n".join(lines) + "\n")
    return EXIT_OK


def _cmd_run(settings: HarnessSettings) -> int:
    if not settings.enabled:
        sys.stdout.write(
            "Skipping conformance run: provisioning a cluster can take a long time. "
            f"Pass --enable or set {ENV_ENABLE}=1 to run it.\n"
        )
        return EXIT_OK

    # Avoid importing the docker and kubernetes clients for `--version` and `list`.
    from k8s_conformance.api import run_harness
    from k8s_conformance.errors import HarnessError

    try:
        result = run_harness(settings, registry=_load_registry(settings))
    except HarnessError as exc:
        logger.error("Conformance run aborted: %s", exc)
        return EXIT_HARNESS_ERROR

    counts = result.outcomes.counts()
    sys.stdout.write(
        f"passed={counts['passed']} failed={counts['failed']} skipped={counts['skipped']} "
        f"report={result.report_path}\n"
    )
    return EXIT_OK if result.ok else EXIT_TESTS_FAILED


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="k8s-conformance")
    parser.add_argument("--version", action="version", version=f"k8s-conformance {__version__} ({REPORT_API_VERSION})")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    def add_selection_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=str, help="YAML run configuration file")
        p.add_argument("--registry", type=str, help="Test registry as module:attribute")
        p.add_argument("--profile", action="append", help="Profile to run (repeatable or comma separated)")
        p.add_argument("--supported-feature", action="append", help="Feature the subject supports (repeatable)")
        p.add_argument("--all-features", action="store_true", help="Treat every feature of the selected tests as supported")
        p.add_argument("--run-test", type=str, help="Only run the test with this short name (glob allowed)")
        p.add_argument("--skip-test", action="append", help="Test short name to skip (repeatable)")
        p.add_argument("--subject-version", type=str, help="Implementation version recorded in the report")

    run = sub.add_parser("run", help="Provision a cluster and run the conformance tests")
    add_selection_flags(run)
    run.add_argument("--enable", action="store_true", help=f"Opt in to the run (or set {ENV_ENABLE}=1)")
    run.add_argument("--manifest", action="append", help="Bootstrap manifest, applied in the given order (repeatable)")
    run.add_argument("--subject-image", type=str)
    run.add_argument("--subject-namespace", type=str)
    run.add_argument("--subject-deployment", type=str)
    run.add_argument("--cluster-image", type=str)
    run.add_argument("--report-dir", type=str)
    run.add_argument("--format", choices=list(REPORT_FORMATS))
    run.add_argument("--mode", type=str)
    run.add_argument("--max-parallel", type=int)
    run.add_argument("--show-log", action="store_true", help="Always capture cluster and subject logs")

    list_cmd = sub.add_parser("list", help="List the tests a selection would run")
    add_selection_flags(list_cmd)

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = _settings_from_args(args)
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.command == "list":
        return _cmd_list(settings)
    return _cmd_run(settings)


if __name__ == "__main__":
    raise SystemExit(main())
