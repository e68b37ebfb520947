from __future__ import annotations

import io
import logging
import tarfile
import tempfile
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

import docker
import docker.errors
from ruamel.yaml import YAML

from k8s_conformance.config import TimeoutConfig
from k8s_conformance.diagnostics import finalize
from k8s_conformance.errors import (
    ClusterNotReady,
    ImageLoadFailure,
    ManifestApplyFailure,
    ProvisionFailure,
    SubjectNotReady,
    TeardownFailure,
)
from k8s_conformance.manifests import Manifest, check_manifest_order
from k8s_conformance.models import ClusterHandle, SubjectEndpoint

logger = logging.getLogger(__name__)

K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
K3S_API_PORT = "6443/tcp"
MANIFEST_DIR = "/tmp/k8s-conformance/manifests"
IMAGE_DIR = "/tmp/k8s-conformance/images"
RUN_LABEL = "io.k8s-conformance.run"


def _output(result: Any) -> str:
    raw = result.output
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


def _tar_single(name: str, data: bytes) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class ClusterProvisioner:
    def __init__(
        self,
        docker_client: docker.DockerClient,
        *,
        cluster_image: str,
        subject_namespace: str,
        subject_deployment: str,
        timeouts: TimeoutConfig | None = None,
        show_log: bool = False,
        api_host: str = "127.0.0.1",
    ) -> None:
        self._docker = docker_client
        self._cluster_image = cluster_image
        self._subject_namespace = subject_namespace
        self._subject_deployment = subject_deployment
        self._timeouts = timeouts or TimeoutConfig()
        self._show_log = show_log
        self._api_host = api_host

    def provision(self, manifests: Sequence[Manifest], subject_image: str) -> ClusterHandle:
        check_manifest_order(manifests)
        handle = self.start()
        try:
            self.bootstrap(handle, manifests, subject_image)
        except BaseException:
            handle.mark_failed()
            try:
                finalize(handle, run_failed=True, verbose=self._show_log)
            except TeardownFailure:
                logger.exception("Teardown after failed provisioning of run %s did not complete", handle.run_id)
            raise
        return handle

    def start(self) -> ClusterHandle:
        run_id = uuid.uuid4().hex[:12]
        name = f"k8s-conformance-{run_id}"
        labels = {RUN_LABEL: run_id}
        try:
            network = self._docker.networks.create(name, driver="bridge", labels=labels)
        except docker.errors.DockerException as exc:
            raise ClusterNotReady(f"Could not create network {name}: {exc}") from exc

        try:
            container = self._docker.containers.run(
                self._cluster_image,
                command=[
                    "server",
                    "--disable=traefik",
                    "--disable=metrics-server",
                    f"--tls-san={self._api_host}",
                ],
                name=name,
                detach=True,
                privileged=True,
                tmpfs={"/run": "", "/var/run": ""},
                ports={K3S_API_PORT: None},
                network=name,
                labels=labels,
            )
        except docker.errors.DockerException as exc:
            try:
                network.remove()
            except docker.errors.DockerException:
                logger.exception("Could not remove network %s", name)
            raise ClusterNotReady(f"Could not start {self._cluster_image}: {exc}") from exc

        logger.info("Started cluster container %s (%s)", name, self._cluster_image)
        return ClusterHandle(
            run_id=run_id,
            network=network,
            container=container,
            subject_namespace=self._subject_namespace,
            subject_deployment=self._subject_deployment,
        )

    def bootstrap(self, handle: ClusterHandle, manifests: Sequence[Manifest], subject_image: str) -> None:
        self.wait_for_api(handle)
        handle.kubeconfig = self.read_kubeconfig(handle)
        self.load_image(handle, subject_image)
        for manifest in manifests:
            self.apply_manifest(handle, manifest)
        self.wait_for_subject(handle)

    def _exec(self, handle: ClusterHandle, cmd: list[str]) -> tuple[int, str]:
        try:
            result = handle.container.exec_run(cmd)
        except docker.errors.DockerException as exc:
            return 1, f"{exc.__class__.__name__}: {exc}"
        return int(result.exit_code or 0), _output(result)

    def wait_for_api(self, handle: ClusterHandle) -> None:
        deadline = time.time() + self._timeouts.cluster_start_s
        last = ""
        while time.time() < deadline:
            try:
                handle.container.reload()
            except docker.errors.DockerException as exc:
                raise ClusterNotReady(f"Cluster container vanished: {exc}") from exc
            status = getattr(handle.container, "status", "running")
            if status in {"exited", "dead"}:
                raise ClusterNotReady("Cluster container exited during startup", details={"status": status})
            code, last = self._exec(handle, ["kubectl", "get", "--raw=/readyz"])
            if code == 0:
                logger.info("Cluster API for run %s is ready", handle.run_id)
                return
            time.sleep(self._timeouts.poll_interval_s)
        raise ClusterNotReady(
            f"Cluster API not ready after {self._timeouts.cluster_start_s:g}s",
            details={"last_output": last.strip()[:200]},
        )

    def read_kubeconfig(self, handle: ClusterHandle) -> dict[str, Any]:
        code, text = self._exec(handle, ["cat", K3S_KUBECONFIG])
        if code != 0:
            raise ClusterNotReady(f"Could not read {K3S_KUBECONFIG}: {text.strip()}")
        kubeconfig = YAML(typ="safe", pure=True).load(text)
        if not isinstance(kubeconfig, dict) or not kubeconfig.get("clusters"):
            raise ClusterNotReady(f"{K3S_KUBECONFIG} is not a kubeconfig")

        try:
            bindings = handle.container.ports.get(K3S_API_PORT) or []
        except AttributeError:
            bindings = []
        if not bindings:
            raise ClusterNotReady(f"Port {K3S_API_PORT} is not published")
        server = f"https://{self._api_host}:{bindings[0]['HostPort']}"
        for entry in kubeconfig["clusters"]:
            entry.setdefault("cluster", {})["server"] = server
        logger.debug("Cluster API for run %s at %s", handle.run_id, server)
        return kubeconfig

    def _put_file(self, handle: ClusterHandle, directory: str, name: str, data: Any) -> None:
        code, out = self._exec(handle, ["mkdir", "-p", directory])
        if code != 0:
            raise ProvisionFailure(f"Could not create {directory} in cluster container: {out.strip()}")
        if not handle.container.put_archive(directory, data):
            raise ProvisionFailure(f"Could not copy {name} into cluster container")

    def apply_manifest(self, handle: ClusterHandle, manifest: Manifest) -> None:
        name = f"{len(handle.applied_manifests):02d}-{manifest.name}"
        try:
            self._put_file(handle, MANIFEST_DIR, name, _tar_single(name, manifest.path.read_bytes()))
        except (OSError, ProvisionFailure, docker.errors.DockerException) as exc:
            raise ManifestApplyFailure(f"Could not stage {manifest.name}: {exc}") from exc

        code, out = self._exec(handle, ["kubectl", "apply", "--server-side", "-f", f"{MANIFEST_DIR}/{name}"])
        if code != 0:
            raise ManifestApplyFailure(
                f"kubectl apply failed for {manifest.name}",
                details={"exit_code": code, "output": out.strip()[:500]},
            )

        crd_names = [str((crd.get("metadata") or {}).get("name")) for crd in manifest.crds()]
        if crd_names:
            timeout = int(self._timeouts.subject_ready_s)
            code, out = self._exec(
                handle,
                ["kubectl", "wait", "--for=condition=Established", f"--timeout={timeout}s"]
                + [f"crd/{crd}" for crd in crd_names],
            )
            if code != 0:
                raise ManifestApplyFailure(
                    f"CRDs from {manifest.name} were not established",
                    details={"output": out.strip()[:500]},
                )

        handle.applied_manifests.append(manifest.name)
        logger.info("Applied %s (%d documents)", manifest.name, len(manifest.documents))

    def load_image(self, handle: ClusterHandle, image_ref: str) -> None:
        try:
            image = self._docker.images.get(image_ref)
        except docker.errors.DockerException as exc:
            raise ImageLoadFailure(f"Could not find local image {image_ref}: {exc}") from exc

        archive_name = f"image-{len(handle.loaded_images)}.tar"
        with tempfile.TemporaryDirectory(prefix="k8s-conformance-") as tmp:
            image_tar = Path(tmp) / archive_name
            bundle = Path(tmp) / "bundle.tar"
            try:
                with image_tar.open("wb") as fh:
                    for chunk in image.save(named=True):
                        fh.write(chunk)
                with tarfile.open(bundle, mode="w") as tar:
                    tar.add(image_tar, arcname=archive_name)
                with bundle.open("rb") as fh:
                    self._put_file(handle, IMAGE_DIR, archive_name, fh)
            except (OSError, ProvisionFailure, docker.errors.DockerException) as exc:
                raise ImageLoadFailure(f"Could not copy {image_ref} into the cluster: {exc}") from exc

        code, out = self._exec(handle, ["ctr", "-n", "k8s.io", "images", "import", f"{IMAGE_DIR}/{archive_name}"])
        if code != 0:
            raise ImageLoadFailure(
                f"Could not import {image_ref} into the cluster image store",
                details={"exit_code": code, "output": out.strip()[:500]},
            )
        handle.loaded_images.add(image_ref)
        logger.info("Loaded %s into cluster image store", image_ref)

    def wait_for_subject(self, handle: ClusterHandle) -> None:
        target = f"deployments/{handle.subject_deployment}"
        deadline = time.time() + self._timeouts.subject_ready_s
        out = ""
        while True:
            remaining = int(max(1.0, deadline - time.time()))
            code, out = self._exec(
                handle,
                [
                    "kubectl",
                    "wait",
                    "-n",
                    handle.subject_namespace,
                    target,
                    "--for=condition=Available",
                    f"--timeout={remaining}s",
                ],
            )
            if code == 0:
                logger.info("Subject %s/%s is available", handle.subject_namespace, target)
                return
            if "NotFound" not in out or time.time() >= deadline:
                break
            time.sleep(self._timeouts.poll_interval_s)

        reason = self._unavailable_reason(handle)
        details: dict[str, Any] = {"deployment": f"{handle.subject_namespace}/{target}"}
        if reason:
            details["reason"] = reason
        elif out.strip():
            details["reason"] = out.strip()[:300]
        raise SubjectNotReady(f"Subject was not available within {self._timeouts.subject_ready_s:g}s", details=details)

    def _unavailable_reason(self, handle: ClusterHandle) -> str | None:
        code, out = self._exec(
            handle,
            [
                "kubectl",
                "get",
                "-n",
                handle.subject_namespace,
                f"deployments/{handle.subject_deployment}",
                "-o",
                'jsonpath={.status.conditions[?(@.type=="Available")].message}',
            ],
        )
        if code != 0 or not out.strip():
            return None
        return out.strip()

    def subject_endpoint(self, handle: ClusterHandle, *, port: int, scheme: str = "http") -> SubjectEndpoint:
        try:
            handle.container.reload()
            networks = handle.container.attrs["NetworkSettings"]["Networks"]
        except (docker.errors.DockerException, KeyError, TypeError) as exc:
            raise ProvisionFailure(f"Could not inspect cluster container: {exc}") from exc
        address = (networks.get(handle.network_name) or {}).get("IPAddress")
        if not address:
            raise ProvisionFailure(f"Cluster container has no address on {handle.network_name}")
        return SubjectEndpoint(host=address, port=port, scheme=scheme)


@contextmanager
def cluster_scope(
    provisioner: ClusterProvisioner,
    manifests: Sequence[Manifest],
    subject_image: str,
    *,
    verbose: bool = False,
) -> Iterator[ClusterHandle]:
    handle = provisioner.provision(manifests, subject_image)
    raised = False
    try:
        yield handle
    except BaseException:
        raised = True
        handle.mark_failed()
        raise
    finally:
        try:
            finalize(handle, run_failed=handle.failed, verbose=verbose)
        except TeardownFailure:
            if not raised:
                raise
            logger.exception("Teardown of run %s did not complete", handle.run_id)
