from typing import Any, Dict

import kopf

from ...crds.const import CRD_GROUP, CRD_PLURAL_IVORYCLUSTER, CRD_VERSION, LABEL_CLUSTER
from ..runtime import ResourceKey
from ..state import state


@kopf.on.event(CRD_GROUP, CRD_VERSION, CRD_PLURAL_IVORYCLUSTER)
async def on_ivorycluster_event(name: str, namespace: str, **kwargs: Any) -> None:
    state.enqueue("IvoryCluster", ResourceKey(namespace, name))


@kopf.on.event("", "v1", "pods", labels={LABEL_CLUSTER: kopf.PRESENT})
async def on_instance_pod_event(namespace: str, labels: Dict[str, str], **kwargs: Any) -> None:
    """Pods changing role or readiness decide the writable instance."""
    state.enqueue("IvoryCluster", ResourceKey(namespace, labels[LABEL_CLUSTER]))
