from unittest.mock import MagicMock

import pytest

from ivoryoperator.crds.const import LABEL_CLUSTER
from ivoryoperator.operator.ivorycluster.handler import on_instance_pod_event, on_ivorycluster_event
from ivoryoperator.operator.ivyupgrade.handler import (
    find_upgrades_for_cluster,
    on_ivyupgrade_event,
    on_job_event_for_upgrades,
)
from ivoryoperator.operator.runtime import ResourceKey
from ivoryoperator.operator.state import OperatorState, list_resource_keys, state
from tests.helpers import NAMESPACE, FakeStore, make_cluster, make_upgrade


@pytest.fixture
def queues(monkeypatch):
    """Swap in recording queues for the process-wide state."""
    recorded = {"IvoryCluster": MagicMock(), "IvyUpgrade": MagicMock()}
    store = FakeStore(
        [
            make_cluster(),
            make_upgrade(),
            make_upgrade(name="other-upgrade", cluster_name="other"),
        ]
    )
    monkeypatch.setattr(state, "store", store)
    monkeypatch.setattr(state, "queues", recorded)
    return recorded


def _added(queue):
    return [call.args[0] for call in queue.add.call_args_list]


def test_find_upgrades_for_cluster():
    store = FakeStore([make_upgrade(), make_upgrade(name="other-upgrade", cluster_name="other")])
    assert find_upgrades_for_cluster(store, NAMESPACE, "hippo") == [ResourceKey(NAMESPACE, "hippo-upgrade")]
    assert find_upgrades_for_cluster(store, "elsewhere", "hippo") == []


def test_list_resource_keys():
    store = FakeStore([make_cluster(), make_cluster(name="zebra")])
    assert list_resource_keys(store, "IvoryCluster") == [
        ResourceKey(NAMESPACE, "hippo"),
        ResourceKey(NAMESPACE, "zebra"),
    ]


def test_enqueue_without_queue_is_dropped():
    OperatorState().enqueue("IvoryCluster", ResourceKey(NAMESPACE, "hippo"))


@pytest.mark.asyncio
async def test_cluster_events_enqueue_the_cluster(queues):
    await on_ivorycluster_event(name="hippo", namespace=NAMESPACE)
    await on_instance_pod_event(namespace=NAMESPACE, labels={LABEL_CLUSTER: "hippo"})
    assert _added(queues["IvoryCluster"]) == [ResourceKey(NAMESPACE, "hippo")] * 2


@pytest.mark.asyncio
async def test_upgrade_event_enqueues_itself(queues):
    await on_ivyupgrade_event(name="hippo-upgrade", namespace=NAMESPACE)
    assert _added(queues["IvyUpgrade"]) == [ResourceKey(NAMESPACE, "hippo-upgrade")]


@pytest.mark.asyncio
async def test_job_event_enqueues_upgrades_of_its_cluster(queues, logger):
    await on_job_event_for_upgrades(namespace=NAMESPACE, labels={LABEL_CLUSTER: "hippo"}, logger=logger)
    assert _added(queues["IvyUpgrade"]) == [ResourceKey(NAMESPACE, "hippo-upgrade")]
