from __future__ import annotations

import logging

import docker.errors

from k8s_conformance.errors import TeardownFailure
from k8s_conformance.models import ClusterHandle, DiagnosticsBundle

logger = logging.getLogger(__name__)


def _decode(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def capture_diagnostics(handle: ClusterHandle) -> DiagnosticsBundle:
    errors: list[str] = []
    cluster_logs: str | None = None
    subject_logs: str | None = None

    container = handle.container
    if container is None:
        return DiagnosticsBundle(errors=("cluster container already released",))

    try:
        cluster_logs = _decode(container.logs())
    except Exception as exc:
        logger.warning("Could not capture cluster logs for run %s: %s", handle.run_id, exc)
        errors.append(f"cluster logs: {exc.__class__.__name__}: {exc}")

    try:
        result = container.exec_run(
            ["kubectl", "logs", "-n", handle.subject_namespace, f"deployments/{handle.subject_deployment}"]
        )
        output = _decode(result.output)
        if result.exit_code == 0:
            subject_logs = output
        else:
            logger.warning("Could not capture subject logs for run %s: %s", handle.run_id, output.strip())
            errors.append(f"subject logs: exit {result.exit_code}: {output.strip()}")
    except Exception as exc:
        logger.warning("Could not capture subject logs for run %s: %s", handle.run_id, exc)
        errors.append(f"subject logs: {exc.__class__.__name__}: {exc}")

    return DiagnosticsBundle(cluster_logs=cluster_logs, subject_logs=subject_logs, errors=tuple(errors))


def release(handle: ClusterHandle) -> None:
    if handle.released:
        return
    handle.released = True

    failures: list[str] = []
    container, network = handle.container, handle.network
    handle.container = None
    handle.network = None

    if container is not None:
        try:
            container.remove(force=True, v=True)
        except docker.errors.NotFound:
            logger.debug("Cluster container for run %s was already gone", handle.run_id)
        except Exception as exc:  # transport errors are not wrapped in DockerException
            logger.error("Failed to remove cluster container for run %s: %s", handle.run_id, exc)
            failures.append(f"container: {exc}")

    if network is not None:
        try:
            network.remove()
        except docker.errors.NotFound:
            logger.debug("Network for run %s was already gone", handle.run_id)
        except Exception as exc:
            logger.error("Failed to remove network for run %s: %s", handle.run_id, exc)
            failures.append(f"network: {exc}")

    if failures:
        raise TeardownFailure(
            f"Could not release every resource of run {handle.run_id}",
            details={"errors": "; ".join(failures)},
        )
    logger.info("Released cluster resources for run %s", handle.run_id)


def finalize(handle: ClusterHandle, *, run_failed: bool, verbose: bool) -> DiagnosticsBundle | None:
    if handle.released:
        logger.debug("Run %s already finalized", handle.run_id)
        return None

    bundle: DiagnosticsBundle | None = None
    if run_failed or verbose:
        bundle = capture_diagnostics(handle)
        logger.info("Diagnostics for run %s:\n%s", handle.run_id, bundle.render())

    release(handle)
    return bundle
