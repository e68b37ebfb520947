from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable, Iterable

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError

from k8s_conformance.errors import ProvisionFailure
from k8s_conformance.models import ClusterHandle
from k8s_conformance.schemes import ResourceType, SchemeRegistry, install_apiextensions, install_core, install_gateway_api

logger = logging.getLogger(__name__)

FIELD_MANAGER = "k8s-conformance"

RestConfig = k8s_client.Configuration


def _to_dict(instance: Any) -> dict[str, Any]:
    if isinstance(instance, dict):
        return instance
    to_dict = getattr(instance, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Unexpected API response type: {type(instance).__name__}")


class ObjectClient:
    def __init__(
        self,
        api_client: k8s_client.ApiClient,
        registry: SchemeRegistry,
        *,
        dynamic: DynamicClient | None = None,
    ) -> None:
        self._api_client = api_client
        self._registry = registry
        self._dynamic = dynamic

    @property
    def registry(self) -> SchemeRegistry:
        return self._registry

    @property
    def api_client(self) -> k8s_client.ApiClient:
        return self._api_client

    @property
    def dynamic(self) -> DynamicClient:
        if self._dynamic is None:
            self._dynamic = DynamicClient(self._api_client)
        return self._dynamic

    def _resource(self, rtype: ResourceType) -> Any:
        return self.dynamic.resources.get(api_version=rtype.api_version, kind=rtype.kind)

    def _namespace(self, rtype: ResourceType, namespace: str | None) -> str | None:
        if not rtype.namespaced:
            return None
        return namespace or "default"

    def _prepare(self, obj: dict[str, Any]) -> tuple[ResourceType, dict[str, Any], str | None]:
        rtype = self._registry.resolve(obj)
        errors = self._registry.validate(obj)
        if errors:
            raise ValueError(f"{rtype.kind} failed schema validation: " + "; ".join(errors))
        body = copy.deepcopy(obj)
        metadata = body.setdefault("metadata", {})
        return rtype, body, self._namespace(rtype, metadata.get("namespace"))

    def get(self, api_version: str, kind: str, name: str, *, namespace: str | None = None) -> dict[str, Any]:
        rtype = self._registry.lookup(api_version, kind)
        resource = self._resource(rtype)
        return _to_dict(resource.get(name=name, namespace=self._namespace(rtype, namespace)))

    def list(
        self,
        api_version: str,
        kind: str,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        rtype = self._registry.lookup(api_version, kind)
        resource = self._resource(rtype)
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if rtype.namespaced and namespace:
            kwargs["namespace"] = namespace
        payload = _to_dict(resource.get(**kwargs))
        return list(payload.get("items") or [])

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        rtype, body, namespace = self._prepare(obj)
        resource = self._resource(rtype)
        created = _to_dict(resource.create(body=body, namespace=namespace))
        logger.debug("Created %s %s", rtype.kind, body["metadata"].get("name"))
        return created

    def apply(self, obj: dict[str, Any]) -> dict[str, Any]:
        rtype, body, namespace = self._prepare(obj)
        resource = self._resource(rtype)
        applied = self.dynamic.server_side_apply(
            resource,
            body=body,
            namespace=namespace,
            field_manager=FIELD_MANAGER,
            force_conflicts=True,
        )
        logger.debug("Applied %s %s", rtype.kind, body["metadata"].get("name"))
        return _to_dict(applied)

    def apply_all(self, objs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self.apply(obj) for obj in objs]

    def delete(self, api_version: str, kind: str, name: str, *, namespace: str | None = None) -> bool:
        rtype = self._registry.lookup(api_version, kind)
        resource = self._resource(rtype)
        try:
            resource.delete(name=name, namespace=self._namespace(rtype, namespace))
        except NotFoundError:
            return False
        return True

    def wait_for(
        self,
        api_version: str,
        kind: str,
        name: str,
        predicate: Callable[[dict[str, Any]], bool],
        *,
        namespace: str | None = None,
        timeout_s: float = 60.0,
        interval_s: float = 1.0,
    ) -> dict[str, Any]:
        self._registry.lookup(api_version, kind)
        deadline = time.time() + timeout_s
        last: dict[str, Any] | None = None
        while time.time() < deadline:
            try:
                last = self.get(api_version, kind, name, namespace=namespace)
            except NotFoundError:
                last = None
            if last is not None and predicate(last):
                return last
            time.sleep(interval_s)
        raise TimeoutError(f"{kind} {name} did not reach the expected state within {timeout_s:g}s")


def rest_config_from_kubeconfig(kubeconfig: dict[str, Any]) -> RestConfig:
    configuration = k8s_client.Configuration()
    try:
        k8s_config.load_kube_config_from_dict(
            config_dict=kubeconfig,
            client_configuration=configuration,
            persist_config=False,
        )
    except ConfigException as exc:
        raise ProvisionFailure(f"Invalid cluster credentials: {exc}") from exc
    return configuration


def build_client(
    handle: ClusterHandle,
    registry: SchemeRegistry,
    *,
    crds: Iterable[dict[str, Any]] = (),
) -> tuple[ObjectClient, RestConfig]:
    if not handle.kubeconfig:
        raise ProvisionFailure(f"Run {handle.run_id} has no cluster credentials")
    rest_config = rest_config_from_kubeconfig(handle.kubeconfig)

    install_core(registry)
    install_apiextensions(registry)
    install_gateway_api(registry)
    for crd in crds:
        registry.add_crd(crd)
    logger.info("Registered %d types across %d API versions", len(registry.types), len(registry.api_versions()))

    return ObjectClient(k8s_client.ApiClient(rest_config), registry), rest_config
