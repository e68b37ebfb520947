from __future__ import annotations

import logging

import docker
import docker.errors

from k8s_conformance.errors import ImageNotPresent

logger = logging.getLogger(__name__)

_DEFAULT_REGISTRY = "docker.io"


def normalize_image_ref(ref: str) -> str:
    name, _, digest = ref.partition("@")
    last = name.rsplit("/", 1)[-1]
    if ":" not in last and not digest:
        name = name + ":latest"
    first, _, rest = name.partition("/")
    if not rest or ("." not in first and ":" not in first and first != "localhost"):
        name = f"{_DEFAULT_REGISTRY}/{name}"
        first, _, rest = name.partition("/")
    if first == _DEFAULT_REGISTRY and "/" not in rest:
        name = f"{_DEFAULT_REGISTRY}/library/{rest}"
    return name + (f"@{digest}" if digest else "")


def local_image_refs(docker_client: docker.DockerClient) -> set[str]:
    refs: set[str] = set()
    for image in docker_client.images.list():
        for tag in image.tags or []:
            refs.add(normalize_image_ref(tag))
    return refs


def ensure_image_present(docker_client: docker.DockerClient, image_ref: str) -> None:
    try:
        refs = local_image_refs(docker_client)
    except docker.errors.APIError as exc:
        raise ImageNotPresent(f"Cannot list local images: {exc}", details={"image": image_ref}) from exc
    if normalize_image_ref(image_ref) not in refs:
        raise ImageNotPresent(
            f"Image {image_ref} is not present locally; build or pull it before running conformance",
            details={"image": image_ref},
        )
    logger.info("Found local image %s", image_ref)
