"""
Shared helpers for configuring the Kubernetes Python client, and the object
store the reconcilers use to read and write the cluster.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from kubernetes import client, config as kube_config

from ..crds.registry import ResourceRegistry, ResourceType

MERGE_PATCH = "application/merge-patch+json"


class KubernetesConfigurationError(RuntimeError):
    """Raised when the Kubernetes client cannot be configured."""


def configure_kube_client(
    logger: Optional[logging.Logger] = None,
    *,
    kubeconfig_path: Optional[str] = None,
) -> Literal["in-cluster", "kubeconfig"]:
    """
    Configure the Kubernetes client, preferring in-cluster credentials when available.

    Args:
        logger: Logger used to emit informational/error messages. If omitted a
            module-level logger will be used.
        kubeconfig_path: Explicit path to a kubeconfig file. When provided the
            function will only attempt to configure the client from this path.

    Returns:
        A string describing the configuration source used.

    Raises:
        KubernetesConfigurationError: If the client could not be configured.
    """

    effective_logger = logger or logging.getLogger(__name__)

    if kubeconfig_path:
        try:
            kube_config.load_kube_config(config_file=kubeconfig_path)
        except kube_config.ConfigException as exc:
            message = (
                "Could not configure Kubernetes client "
                f"from kubeconfig '{kubeconfig_path}'."
            )
            effective_logger.error("%s %s", message, exc)
            raise KubernetesConfigurationError(message) from exc

        effective_logger.info("Using kubeconfig at '%s'.", kubeconfig_path)
        return "kubeconfig"

    try:
        kube_config.load_incluster_config()
        effective_logger.info("Using in-cluster Kubernetes configuration.")
        return "in-cluster"
    except kube_config.ConfigException as incluster_error:
        try:
            kube_config.load_kube_config()
            effective_logger.info("Using local kubeconfig.")
            return "kubeconfig"
        except kube_config.ConfigException as kubeconfig_error:
            message = (
                "Unable to configure Kubernetes client using either "
                "in-cluster credentials or the default kubeconfig."
            )
            effective_logger.error(message)
            effective_logger.debug(
                "In-cluster configuration error: %s",
                incluster_error,
            )
            effective_logger.debug(
                "Default kubeconfig error: %s",
                kubeconfig_error,
            )
            raise KubernetesConfigurationError(message) from kubeconfig_error


def is_not_found(exc: client.ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: client.ApiException) -> bool:
    return exc.status == 409


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in labels.items())


def _is_subset(subset: Any, superset: Any) -> bool:
    """
    Recursively checks that every key in ``subset`` is present in ``superset``
    with an equal value. Lists must match exactly.
    """
    if isinstance(subset, dict):
        if not isinstance(superset, dict):
            return False
        return all(
            key in superset and _is_subset(value, superset[key])
            for key, value in subset.items()
        )
    return subset == superset


def merge_patch_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    The JSON merge patch that turns ``before`` into ``after``.

    Only changed keys are included; removed keys map to None. Lists and
    other values are replaced whole, as merge patch requires.
    """
    patch: Dict[str, Any] = {}
    for key in before:
        if key not in after:
            patch[key] = None
    for key, value in after.items():
        old = before.get(key)
        if key in before and old == value:
            continue
        if isinstance(old, dict) and isinstance(value, dict):
            patch[key] = merge_patch_diff(old, value)
        else:
            patch[key] = value
    return patch


class KubeStore:
    """
    Typed access to the Kubernetes API for every kind in a ResourceRegistry.

    All objects go in and come out as plain dictionaries in their JSON shape,
    so built-in kinds and custom resources are handled the same way.
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        api_client: Optional[client.ApiClient] = None,
    ) -> None:
        self.registry = registry
        self.api_client = api_client or client.ApiClient()
        self._apis: Dict[type, Any] = {}

    def _api(self, resource_type: ResourceType) -> Any:
        api_class = resource_type.api_class or client.CustomObjectsApi
        if api_class not in self._apis:
            self._apis[api_class] = api_class(self.api_client)
        return self._apis[api_class]

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _custom_args(self, resource_type: ResourceType) -> Dict[str, str]:
        return {
            "group": resource_type.group,
            "version": resource_type.version,
            "plural": resource_type.plural,
        }

    def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        rt = self.registry.lookup(kind)
        api = self._api(rt)
        if rt.is_custom:
            obj = api.get_namespaced_custom_object(
                namespace=namespace, name=name, **self._custom_args(rt)
            )
        else:
            obj = getattr(api, f"read_namespaced_{rt.singular}")(name=name, namespace=namespace)
        return self._to_dict(obj)

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind in one namespace, or in all namespaces when omitted."""
        rt = self.registry.lookup(kind)
        api = self._api(rt)
        kwargs: Dict[str, Any] = {}
        if labels:
            kwargs["label_selector"] = label_selector(labels)

        if rt.is_custom:
            if namespace:
                result = api.list_namespaced_custom_object(
                    namespace=namespace, **self._custom_args(rt), **kwargs
                )
            else:
                result = api.list_cluster_custom_object(**self._custom_args(rt), **kwargs)
        elif namespace:
            result = getattr(api, f"list_namespaced_{rt.singular}")(namespace=namespace, **kwargs)
        else:
            result = getattr(api, f"list_{rt.singular}_for_all_namespaces")(**kwargs)

        result = self._to_dict(result)
        items = result.get("items") or []
        for item in items:
            # List responses omit kind and apiVersion on their items.
            item.setdefault("kind", rt.kind)
            item.setdefault("apiVersion", rt.api_version)
        return items

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        rt = self.registry.lookup(body["kind"])
        api = self._api(rt)
        namespace = body["metadata"]["namespace"]
        if rt.is_custom:
            obj = api.create_namespaced_custom_object(
                namespace=namespace, body=body, **self._custom_args(rt)
            )
        else:
            obj = getattr(api, f"create_namespaced_{rt.singular}")(namespace=namespace, body=body)
        return self._to_dict(obj)

    def patch(
        self, kind: str, namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Send a JSON merge patch to the main resource."""
        return self._patch(kind, namespace, name, body, subresource="")

    def patch_status(
        self, kind: str, namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Send a JSON merge patch to the status subresource."""
        return self._patch(kind, namespace, name, body, subresource="_status")

    def _patch(
        self, kind: str, namespace: str, name: str, body: Dict[str, Any], subresource: str
    ) -> Dict[str, Any]:
        rt = self.registry.lookup(kind)
        api = self._api(rt)
        if rt.is_custom:
            method = getattr(api, f"patch_namespaced_custom_object{subresource}")
            obj = method(
                namespace=namespace,
                name=name,
                body=body,
                _content_type=MERGE_PATCH,
                **self._custom_args(rt),
            )
        else:
            method = getattr(api, f"patch_namespaced_{rt.singular}{subresource}")
            obj = method(name=name, namespace=namespace, body=body, _content_type=MERGE_PATCH)
        return self._to_dict(obj)

    def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        *,
        uid: Optional[str] = None,
        resource_version: Optional[str] = None,
        propagation_policy: Optional[str] = None,
    ) -> None:
        rt = self.registry.lookup(kind)
        api = self._api(rt)
        preconditions = None
        if uid or resource_version:
            preconditions = client.V1Preconditions(uid=uid, resource_version=resource_version)
        options = client.V1DeleteOptions(
            preconditions=preconditions, propagation_policy=propagation_policy
        )
        if rt.is_custom:
            api.delete_namespaced_custom_object(
                namespace=namespace, name=name, body=options, **self._custom_args(rt)
            )
        else:
            getattr(api, f"delete_namespaced_{rt.singular}")(
                name=name, namespace=namespace, body=options
            )

    def delete_exactly(
        self,
        obj: Dict[str, Any],
        propagation_policy: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> bool:
        """
        Delete ``obj`` only if it still has the same UID and resourceVersion.

        An object that is already gone or was changed by someone else is left
        alone.

        Returns:
            True when the delete was accepted.
        """
        meta = obj["metadata"]
        try:
            self.delete(
                obj["kind"],
                meta["namespace"],
                meta["name"],
                uid=meta.get("uid"),
                resource_version=meta.get("resourceVersion"),
                propagation_policy=propagation_policy,
            )
        except client.ApiException as e:
            if is_not_found(e) or is_conflict(e):
                (logger or logging.getLogger(__name__)).info(
                    f"{obj['kind']} '{meta['name']}' already changed or removed; skipping delete."
                )
                return False
            raise
        return True

    def apply(
        self, intent: Dict[str, Any], logger: Optional[logging.Logger] = None
    ) -> Dict[str, Any]:
        """
        Create ``intent`` if it does not exist, otherwise patch it when the
        live object differs from it.
        """
        effective_logger = logger or logging.getLogger(__name__)
        kind = intent["kind"]
        meta = intent["metadata"]
        try:
            existing = self.get(kind, meta["namespace"], meta["name"])
        except client.ApiException as e:
            if not is_not_found(e):
                raise
            created = self.create(intent)
            effective_logger.info(f"{kind} '{meta['name']}' created.")
            return created

        desired = {k: v for k, v in intent.items() if k not in ("apiVersion", "kind", "status")}
        if _is_subset(desired, existing):
            return existing

        patched = self.patch(kind, meta["namespace"], meta["name"], desired)
        effective_logger.info(f"{kind} '{meta['name']}' patched.")
        return patched
