import asyncio
import logging
from typing import Any, Dict, List

import kopf

from ...crds.const import (
    CRD_GROUP,
    CRD_PLURAL_IVORYCLUSTER,
    CRD_PLURAL_IVYUPGRADE,
    CRD_VERSION,
    LABEL_CLUSTER,
)
from ...utils.kube import KubeStore
from ..runtime import ResourceKey
from ..state import state


def find_upgrades_for_cluster(
    store: KubeStore, namespace: str, cluster_name: str
) -> List[ResourceKey]:
    """IvyUpgrades in ``namespace`` that target ``cluster_name``."""
    return [
        ResourceKey(namespace, item["metadata"]["name"])
        for item in store.list("IvyUpgrade", namespace)
        if (item.get("spec") or {}).get("ivoryClusterName") == cluster_name
    ]


async def _enqueue_upgrades_for(namespace: str, cluster_name: str, logger: logging.Logger) -> None:
    if state.store is None:
        return
    keys = await asyncio.to_thread(find_upgrades_for_cluster, state.store, namespace, cluster_name)
    for key in keys:
        logger.debug(f"Enqueueing IvyUpgrade '{key}' for cluster '{cluster_name}'.")
        state.enqueue("IvyUpgrade", key)


@kopf.on.event(CRD_GROUP, CRD_VERSION, CRD_PLURAL_IVYUPGRADE)
async def on_ivyupgrade_event(name: str, namespace: str, **kwargs: Any) -> None:
    state.enqueue("IvyUpgrade", ResourceKey(namespace, name))


@kopf.on.event(CRD_GROUP, CRD_VERSION, CRD_PLURAL_IVORYCLUSTER)
async def on_cluster_event_for_upgrades(
    name: str, namespace: str, logger: logging.Logger, **kwargs: Any
) -> None:
    await _enqueue_upgrades_for(namespace, name, logger)


@kopf.on.event("batch", "v1", "jobs", labels={LABEL_CLUSTER: kopf.PRESENT})
async def on_job_event_for_upgrades(
    namespace: str, labels: Dict[str, str], logger: logging.Logger, **kwargs: Any
) -> None:
    await _enqueue_upgrades_for(namespace, labels[LABEL_CLUSTER], logger)


@kopf.on.event("", "v1", "pods", labels={LABEL_CLUSTER: kopf.PRESENT})
async def on_pod_event_for_upgrades(
    namespace: str, labels: Dict[str, str], logger: logging.Logger, **kwargs: Any
) -> None:
    # Shutdown is only visible as instance pods going away.
    await _enqueue_upgrades_for(namespace, labels[LABEL_CLUSTER], logger)
