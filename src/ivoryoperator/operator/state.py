"""
Process-wide operator state created at startup.

kopf handlers are module-level functions, so the store and the work queues
they feed are reached through this holder.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..utils.kube import KubeStore
from .runtime import ReconcileQueue, ResourceKey

logger = logging.getLogger(__name__)


@dataclass
class OperatorState:
    store: Optional[KubeStore] = None
    queues: Dict[str, ReconcileQueue] = field(default_factory=dict)
    tasks: List["asyncio.Task[None]"] = field(default_factory=list)

    def enqueue(self, kind: str, key: ResourceKey) -> None:
        queue = self.queues.get(kind)
        if queue is None:
            logger.debug(f"No queue for {kind}; dropping '{key}'.")
            return
        queue.add(key)


def list_resource_keys(store: KubeStore, kind: str) -> List[ResourceKey]:
    return [
        ResourceKey(item["metadata"]["namespace"], item["metadata"]["name"])
        for item in store.list(kind)
    ]


state = OperatorState()
