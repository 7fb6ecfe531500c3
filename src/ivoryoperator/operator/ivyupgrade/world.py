"""
Read-only observation of everything an IvyUpgrade decision depends on.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from kubernetes import client

from ...crds.const import LABEL_CLUSTER, LABEL_INSTANCE, LABEL_PATRONI
from ...crds.ivorycluster import IvoryCluster
from ...crds.ivyupgrade import IvyUpgrade
from ...utils.kube import KubeStore, is_not_found

Object = Mapping[str, Any]


@dataclass(frozen=True)
class World:
    """
    One snapshot of the cluster targeted by an upgrade. Built once at the
    start of a reconcile and never changed afterwards.
    """

    cluster: Optional[IvoryCluster] = None
    cluster_not_found: Optional[str] = None
    jobs: Mapping[str, Object] = field(default_factory=lambda: MappingProxyType({}))
    shutdown: bool = False
    primary: Optional[Object] = None
    replicas: Tuple[Object, ...] = ()
    patroni_endpoints: Tuple[Object, ...] = ()

    @property
    def replicas_expected(self) -> int:
        return len(self.replicas)


def patroni_scope(cluster_name: str) -> str:
    return f"{cluster_name}-ha"


def _index_by_name(objects) -> Mapping[str, Object]:
    return MappingProxyType({obj["metadata"]["name"]: obj for obj in objects})


def observe_world(store: KubeStore, upgrade: IvyUpgrade) -> World:
    """
    Read the cluster named by ``upgrade`` and its related objects.

    A missing cluster is reported in the snapshot rather than raised. Any
    other API error propagates so the reconcile is retried.
    """
    namespace = upgrade.metadata.namespace
    cluster_name = upgrade.spec.ivory_cluster_name

    try:
        cluster_obj = store.get("IvoryCluster", namespace, cluster_name)
    except client.ApiException as e:
        if is_not_found(e):
            return World(cluster_not_found=f"IvoryCluster '{cluster_name}' not found")
        raise
    cluster = IvoryCluster.from_dict(cluster_obj)

    selector = {LABEL_CLUSTER: cluster_name}
    jobs = store.list("Job", namespace, selector)
    pods = store.list("Pod", namespace, selector)
    runners = [
        sts
        for sts in store.list("StatefulSet", namespace, selector)
        if LABEL_INSTANCE in (sts["metadata"].get("labels") or {})
    ]
    endpoints = store.list(
        "Endpoints", namespace, {**selector, LABEL_PATRONI: patroni_scope(cluster_name)}
    )

    instance_pods = [p for p in pods if LABEL_INSTANCE in (p["metadata"].get("labels") or {})]
    shutdown = not instance_pods

    # The instance to start first after the upgrade. Everything else is a
    # replica whose data will be removed.
    primary: Optional[Dict[str, Any]] = None
    replicas = []
    for sts in sorted(runners, key=lambda s: s["metadata"]["name"]):
        if cluster.startup_instance and sts["metadata"]["name"] == cluster.startup_instance:
            primary = sts
        else:
            replicas.append(sts)

    return World(
        cluster=cluster,
        jobs=_index_by_name(jobs),
        shutdown=shutdown,
        primary=primary,
        replicas=tuple(replicas),
        patroni_endpoints=tuple(endpoints),
    )
