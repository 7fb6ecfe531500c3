"""
In-memory stand-ins for the Kubernetes API and builders for the objects the
reconcilers read.
"""
import copy
from typing import Any, Dict, Iterable, List, Optional, Tuple

from kubernetes import client

from ivoryoperator.crds.const import (
    ANNOTATION_ALLOW_UPGRADE,
    CRD_API_VERSION,
    LABEL_CLUSTER,
    LABEL_INSTANCE,
    LABEL_PATRONI,
    LABEL_ROLE,
    ROLE_PRIMARY,
)

NAMESPACE = "test-ns"
CLUSTER_NAME = "hippo"
UPGRADE_NAME = "hippo-upgrade"


def _merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    """JSON merge patch semantics: dicts merge, None deletes, the rest replaces."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeStore:
    """
    Implements the KubeStore interface over a dictionary. Objects go in and
    come out as deep copies, like they would over the wire.
    """

    def __init__(self, objects: Iterable[Dict[str, Any]] = ()) -> None:
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.created: List[Dict[str, Any]] = []
        self.deleted: List[Tuple[str, str, Optional[str]]] = []
        self.patches: List[Tuple[str, str, Dict[str, Any]]] = []
        self.status_patches: List[Tuple[str, str, Dict[str, Any]]] = []
        self._version = 0
        for obj in objects:
            self.put(obj)

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> Tuple[str, str, str]:
        return kind, namespace, name

    def put(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        meta = obj["metadata"]
        meta.setdefault("uid", f"uid-{obj['kind'].lower()}-{meta['name']}")
        self._version += 1
        meta["resourceVersion"] = str(self._version)
        self.objects[self._key(obj["kind"], meta["namespace"], meta["name"])] = obj
        return copy.deepcopy(obj)

    def peek(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.objects.get(self._key(kind, namespace, name))

    def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        obj = self.peek(kind, namespace, name)
        if obj is None:
            raise client.ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        items = []
        for (obj_kind, obj_namespace, _), obj in sorted(self.objects.items()):
            if obj_kind != kind or (namespace and obj_namespace != namespace):
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if labels and any(obj_labels.get(k) != v for k, v in labels.items()):
                continue
            items.append(copy.deepcopy(obj))
        return items

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        if self.peek(body["kind"], meta["namespace"], meta["name"]) is not None:
            raise client.ApiException(status=409, reason="AlreadyExists")
        self.created.append(copy.deepcopy(body))
        return self.put(body)

    def patch(self, kind: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.get(kind, namespace, name)
        self.patches.append((kind, name, copy.deepcopy(body)))
        _merge(existing, body)
        return self.put(existing)

    def patch_status(
        self, kind: str, namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        existing = self.get(kind, namespace, name)
        self.status_patches.append((kind, name, copy.deepcopy(body)))
        _merge(existing, {"status": body.get("status")})
        return self.put(existing)

    def delete_exactly(self, obj, propagation_policy=None, logger=None) -> bool:
        meta = obj["metadata"]
        current = self.peek(obj["kind"], meta["namespace"], meta["name"])
        if current is None:
            return False
        current_meta = current["metadata"]
        if meta.get("uid") and meta["uid"] != current_meta["uid"]:
            return False
        if meta.get("resourceVersion") and meta["resourceVersion"] != current_meta["resourceVersion"]:
            return False
        del self.objects[self._key(obj["kind"], meta["namespace"], meta["name"])]
        self.deleted.append((obj["kind"], meta["name"], propagation_policy))
        return True

    def apply(self, intent: Dict[str, Any], logger=None) -> Dict[str, Any]:
        meta = intent["metadata"]
        if self.peek(intent["kind"], meta["namespace"], meta["name"]) is None:
            return self.create(intent)
        desired = {k: v for k, v in intent.items() if k not in ("apiVersion", "kind", "status")}
        return self.patch(intent["kind"], meta["namespace"], meta["name"], desired)

    def created_names(self, kind: str) -> List[str]:
        return [obj["metadata"]["name"] for obj in self.created if obj["kind"] == kind]


def make_cluster(
    name: str = CLUSTER_NAME,
    version: int = 14,
    status_version: Optional[int] = None,
    startup_instance: Optional[str] = "hippo-00-abcd",
    allow_upgrade: Optional[str] = None,
    repos: Optional[List[Dict[str, Any]]] = None,
    repo_host: bool = False,
    exporter: bool = False,
    annotations: Optional[Dict[str, str]] = None,
    generation: int = 1,
) -> Dict[str, Any]:
    annotations = dict(annotations or {})
    if allow_upgrade:
        annotations[ANNOTATION_ALLOW_UPGRADE] = allow_upgrade

    pgbackrest: Dict[str, Any] = {"repos": repos if repos is not None else [{"name": "repo1", "volume": {}}]}
    if repo_host:
        pgbackrest["repoHost"] = {}
    spec: Dict[str, Any] = {
        "postgresVersion": version,
        "instances": [{"name": "00", "replicas": 2}],
        "backups": {"pgbackrest": pgbackrest},
    }
    if exporter:
        spec["monitoring"] = {"pgmonitor": {"exporter": {}}}

    status: Dict[str, Any] = {}
    if status_version is not None:
        status["postgresVersion"] = status_version
    if startup_instance:
        status["startupInstance"] = startup_instance

    return {
        "apiVersion": CRD_API_VERSION,
        "kind": "IvoryCluster",
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "uid": f"uid-{name}",
            "generation": generation,
            "annotations": annotations,
        },
        "spec": spec,
        "status": status,
    }


def make_upgrade(
    name: str = UPGRADE_NAME,
    from_version: int = 14,
    to_version: int = 15,
    cluster_name: str = CLUSTER_NAME,
    conditions: Optional[List[Dict[str, Any]]] = None,
    generation: int = 1,
) -> Dict[str, Any]:
    return {
        "apiVersion": CRD_API_VERSION,
        "kind": "IvyUpgrade",
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "uid": f"uid-{name}",
            "generation": generation,
        },
        "spec": {
            "ivoryClusterName": cluster_name,
            "fromIvoryVersion": from_version,
            "toIvoryVersion": to_version,
        },
        "status": {"conditions": conditions or []},
    }


def make_statefulset(name: str, cluster_name: str = CLUSTER_NAME) -> Dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "labels": {LABEL_CLUSTER: cluster_name, LABEL_INSTANCE: name},
        },
        "spec": {"template": {"spec": {"tolerations": [{"key": "db", "operator": "Exists"}]}}},
    }


def make_pod(
    instance: str,
    cluster_name: str = CLUSTER_NAME,
    primary: bool = False,
    ready: bool = True,
    containers: Iterable[str] = ("database",),
    deleting: bool = False,
) -> Dict[str, Any]:
    labels = {LABEL_CLUSTER: cluster_name, LABEL_INSTANCE: instance}
    if primary:
        labels[LABEL_ROLE] = ROLE_PRIMARY
    metadata: Dict[str, Any] = {"name": f"{instance}-0", "namespace": NAMESPACE, "labels": labels}
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": metadata,
        "status": {
            "containerStatuses": [
                {
                    "name": container,
                    "ready": ready,
                    "state": {"running": {"startedAt": "2024-01-01T00:00:00Z"}} if ready else {"waiting": {}},
                    "imageID": f"sha256:{container}",
                }
                for container in containers
            ]
        },
    }


def make_job(
    name: str,
    labels: Dict[str, str],
    condition: Optional[str] = None,
) -> Dict[str, Any]:
    status: Dict[str, Any] = {}
    if condition:
        status["conditions"] = [{"type": condition, "status": "True"}]
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": name, "namespace": NAMESPACE, "labels": dict(labels)},
        "status": status,
    }


def make_patroni_endpoints(cluster_name: str = CLUSTER_NAME) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Endpoints",
        "metadata": {
            "name": f"{cluster_name}-ha",
            "namespace": NAMESPACE,
            "labels": {LABEL_CLUSTER: cluster_name, LABEL_PATRONI: f"{cluster_name}-ha"},
        },
    }
