from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import docker
import docker.errors

from k8s_conformance.client import build_client
from k8s_conformance.cluster import ClusterProvisioner, cluster_scope
from k8s_conformance.config import HarnessSettings
from k8s_conformance.errors import HarnessError, ProvisionFailure
from k8s_conformance.images import ensure_image_present
from k8s_conformance.manifests import crd_definitions, load_manifests
from k8s_conformance.models import OutcomeSet
from k8s_conformance.report import Implementation, ReportDocument, ReportMetadata, generate, persist, render
from k8s_conformance.runner import ConformanceRunner, RunnerOptions
from k8s_conformance.schemes import SchemeRegistry
from k8s_conformance.suite import TestRegistry, load_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HarnessResult:
    outcomes: OutcomeSet
    report: ReportDocument
    report_path: Path

    @property
    def ok(self) -> bool:
        return not self.outcomes.failed


def _implementation(settings: HarnessSettings) -> Implementation:
    info = settings.implementation
    return Implementation(
        organization=info.organization,
        project=info.project,
        url=info.url,
        version=info.version,
        contact=list(info.contact),
    )


def run_harness(
    settings: HarnessSettings,
    *,
    docker_client: docker.DockerClient | None = None,
    registry: TestRegistry | None = None,
    schemes: SchemeRegistry | None = None,
) -> HarnessResult:
    """
    Run the full conformance pipeline once.

    Image check, provisioning, client construction, test execution and report
    persistence run in order; the cluster is torn down on every exit path.
    """

    if registry is None:
        if not settings.registry:
            raise HarnessError("No test registry configured (use --registry module:attribute)")
        registry = load_registry(settings.registry)

    manifests = load_manifests(settings.manifests)
    owns_client = docker_client is None
    if docker_client is None:
        try:
            docker_client = docker.from_env()
        except docker.errors.DockerException as exc:
            raise ProvisionFailure(f"Cannot connect to the Docker daemon: {exc}") from exc

    try:
        ensure_image_present(docker_client, settings.subject_image)
        provisioner = ClusterProvisioner(
            docker_client,
            cluster_image=settings.cluster_image,
            subject_namespace=settings.subject_namespace,
            subject_deployment=settings.subject_deployment,
            timeouts=settings.timeouts,
            show_log=settings.show_log,
        )
        with cluster_scope(provisioner, manifests, settings.subject_image, verbose=settings.show_log) as handle:
            client, rest_config = build_client(
                handle,
                schemes if schemes is not None else SchemeRegistry(),
                crds=crd_definitions(manifests),
            )
            endpoint = provisioner.subject_endpoint(handle, port=settings.probe.port, scheme=settings.probe.scheme)

            runner = ConformanceRunner(
                registry,
                options=RunnerOptions(
                    timeouts=settings.timeouts,
                    probe=settings.probe,
                    max_parallel=settings.max_parallel,
                ),
            )
            selection = settings.selection()
            implementation = _implementation(settings)
            outcomes = runner.run(
                client,
                rest_config,
                endpoint,
                selection,
                f"{implementation.organization}/{implementation.project}@{implementation.version}",
            )
            if outcomes.failed:
                handle.mark_failed()

            selected = selection.select(registry.tests())
            info = registry.report()
            report = generate(
                outcomes,
                ReportMetadata(
                    implementation=implementation,
                    api_version=info.api_version,
                    channel=info.channel,
                    profiles=tuple(selection.exercised_profiles(selected)),
                    supported_features=selection.effective_features(selected),
                    mode=settings.mode,
                ),
            )
            logger.info("Conformance report:\n%s", render(report, settings.report_format))
            report_path = persist(report, settings.report_dir, settings.report_format)
    finally:
        if owns_client:
            docker_client.close()

    return HarnessResult(outcomes=outcomes, report=report, report_path=report_path)
