"""
Registry of the resource kinds the operator reads and writes.

A registry is built once at startup and handed to the object store, which
uses it to route each kind to the right Kubernetes API.
"""
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from kubernetes import client

from .const import CRD_API_VERSION, CRD_PLURAL_IVORYCLUSTER, CRD_PLURAL_IVYUPGRADE


@dataclass(frozen=True)
class ResourceType:
    kind: str
    api_version: str
    plural: str
    namespaced: bool = True
    # Built-in kinds are served by a typed API class whose methods follow the
    # "{verb}_namespaced_{singular}" naming scheme. Custom kinds leave these
    # empty and go through CustomObjectsApi.
    api_class: Optional[type] = None
    singular: Optional[str] = None

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def is_custom(self) -> bool:
        return self.api_class is None


class ResourceRegistry:
    def __init__(self) -> None:
        self._types: Dict[str, ResourceType] = {}

    def register(self, resource_type: ResourceType) -> None:
        if resource_type.kind in self._types:
            raise ValueError(f"Kind '{resource_type.kind}' is already registered")
        self._types[resource_type.kind] = resource_type

    def lookup(self, kind: str) -> ResourceType:
        try:
            return self._types[kind]
        except KeyError:
            raise KeyError(f"Kind '{kind}' is not registered") from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._types

    def __iter__(self) -> Iterator[ResourceType]:
        return iter(self._types.values())


def create_operator_registry() -> ResourceRegistry:
    """Build the registry with every kind the operator touches."""
    registry = ResourceRegistry()
    registry.register(ResourceType("IvoryCluster", CRD_API_VERSION, CRD_PLURAL_IVORYCLUSTER))
    registry.register(ResourceType("IvyUpgrade", CRD_API_VERSION, CRD_PLURAL_IVYUPGRADE))
    registry.register(ResourceType("Job", "batch/v1", "jobs", True, client.BatchV1Api, "job"))
    registry.register(ResourceType("Pod", "v1", "pods", True, client.CoreV1Api, "pod"))
    registry.register(
        ResourceType("StatefulSet", "apps/v1", "statefulsets", True, client.AppsV1Api, "stateful_set")
    )
    registry.register(
        ResourceType("Endpoints", "v1", "endpoints", True, client.CoreV1Api, "endpoints")
    )
    registry.register(
        ResourceType("ConfigMap", "v1", "configmaps", True, client.CoreV1Api, "config_map")
    )
    registry.register(ResourceType("Secret", "v1", "secrets", True, client.CoreV1Api, "secret"))
    return registry
