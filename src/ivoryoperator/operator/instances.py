"""
Grouping of observed pods and StatefulSets into database instances.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..crds.const import CONTAINER_DATABASE, LABEL_INSTANCE, LABEL_ROLE, ROLE_PRIMARY


def _container_status(pod: Dict[str, Any], container: str) -> Optional[Dict[str, Any]]:
    for status in pod.get("status", {}).get("containerStatuses") or []:
        if status.get("name") == container:
            return status
    return None


@dataclass
class Instance:
    name: str
    pods: List[Dict[str, Any]] = field(default_factory=list)
    runner: Optional[Dict[str, Any]] = None

    def _single_pod(self) -> Optional[Dict[str, Any]]:
        if len(self.pods) != 1:
            return None
        return self.pods[0]

    def is_primary(self) -> Tuple[bool, bool]:
        """Return (primary, known) from the role label of the instance pod."""
        pod = self._single_pod()
        if pod is None:
            return False, False
        return pod["metadata"].get("labels", {}).get(LABEL_ROLE) == ROLE_PRIMARY, True

    def is_running(self, container: str) -> Tuple[bool, bool]:
        """Return (running, known) for a container of the instance pod."""
        pod = self._single_pod()
        if pod is None:
            return False, False
        status = _container_status(pod, container)
        if status is None:
            return False, False
        return bool(status.get("state", {}).get("running")) and bool(status.get("ready")), True

    def image_id(self, container: str) -> str:
        pod = self._single_pod()
        status = _container_status(pod, container) if pod else None
        return (status or {}).get("imageID", "")

    def is_writable(self) -> bool:
        primary, known = self.is_primary()
        if not (primary and known):
            return False
        if self.pods[0]["metadata"].get("deletionTimestamp"):
            return False
        running, known = self.is_running(CONTAINER_DATABASE)
        return running and known


@dataclass
class ObservedInstances:
    by_name: Dict[str, Instance] = field(default_factory=dict)

    @classmethod
    def from_objects(
        cls,
        pods: List[Dict[str, Any]],
        runners: Optional[List[Dict[str, Any]]] = None,
    ) -> "ObservedInstances":
        observed = cls()
        for runner in runners or []:
            # Only instance StatefulSets carry the instance label; the repo
            # host does not.
            name = runner["metadata"].get("labels", {}).get(LABEL_INSTANCE)
            if name:
                observed._instance(name).runner = runner
        for pod in pods:
            name = pod["metadata"].get("labels", {}).get(LABEL_INSTANCE)
            if name:
                observed._instance(name).pods.append(pod)
        return observed

    def _instance(self, name: str) -> Instance:
        if name not in self.by_name:
            self.by_name[name] = Instance(name=name)
        return self.by_name[name]

    @property
    def names(self) -> List[str]:
        return sorted(self.by_name)

    def writable(self) -> Optional[Instance]:
        """The instance that can accept writes right now, if any."""
        for name in self.names:
            instance = self.by_name[name]
            if instance.is_writable():
                return instance
        return None
