"""
Kubernetes operator for IvoryCluster and IvyUpgrade custom resources.

kopf event handlers only enqueue resource keys. The reconcilers run from
work queues started here:
- IvoryCluster: pgBackRest configuration, monitoring Secret, exporter SQL
  (ivorycluster/reconciler.py)
- IvyUpgrade: the major-version upgrade state machine
  (ivyupgrade/reconciler.py)
"""
import asyncio
import logging
from typing import Any

import kopf

from ..crds.registry import create_operator_registry
from ..utils.kube import KubeStore, KubernetesConfigurationError, configure_kube_client
# NOTE: This is what registers our operator's functions with kopf so that
#       `kopf.run -m ivoryoperator.operator` can work. If you add more
#       handler modules, you must add them here.
# ruff: noqa: F401
from . import ivorycluster
from . import ivyupgrade
from .config import config as operator_config
from .exec import PodExecutor
from .ivorycluster.reconciler import IvoryClusterReconciler
from .ivyupgrade.reconciler import IvyUpgradeReconciler
from .runtime import ReconcileQueue, refresh_periodically
from .state import list_resource_keys, state


@kopf.on.startup()
async def on_startup(
    settings: kopf.OperatorSettings, logger: logging.Logger, **kwargs: Any
) -> None:
    """
    Handle the startup of the operator.

    This sets operator-wide settings, builds the object store and starts the
    reconcile workers and their periodic refresh.
    """
    try:
        configure_kube_client(logger)
    except KubernetesConfigurationError as exc:
        raise kopf.PermanentError(str(exc)) from exc

    logger.info("Operator started.")
    logger.info(f"Cluster domain: {operator_config.cluster_domain}")

    # Every handler only enqueues, so this bounds event processing rather
    # than reconciles. Reconcile concurrency is bounded by the queues below.
    settings.batching.worker_limit = operator_config.worker_limit

    # All logs by default go to the k8s event api. Disable event posting to
    # reduce API load.
    settings.posting.enabled = operator_config.posting_enabled

    store = KubeStore(create_operator_registry())
    state.store = store

    clusters = IvoryClusterReconciler(
        store,
        PodExecutor(),
        operator_config.cluster_domain,
        logging.getLogger("ivoryoperator.ivorycluster"),
    )
    upgrades = IvyUpgradeReconciler(
        store,
        operator_config.upgrade_image,
        logging.getLogger("ivoryoperator.ivyupgrade"),
    )
    state.queues["IvoryCluster"] = ReconcileQueue(
        "ivorycluster",
        clusters.reconcile,
        logger,
        workers=operator_config.worker_limit,
        backoff_max=operator_config.requeue_backoff_max,
    )
    state.queues["IvyUpgrade"] = ReconcileQueue(
        "ivyupgrade",
        upgrades.reconcile,
        logger,
        workers=operator_config.worker_limit,
        backoff_max=operator_config.requeue_backoff_max,
    )

    loop = asyncio.get_running_loop()
    for kind, queue in state.queues.items():
        queue.start()
        task = loop.create_task(
            refresh_periodically(
                queue,
                lambda kind=kind: list_resource_keys(store, kind),
                logger,
                interval_seconds=operator_config.refresh_interval,
            )
        )
        state.tasks.append(task)


@kopf.on.cleanup()
async def on_cleanup(logger: logging.Logger, **kwargs: Any) -> None:
    for task in state.tasks:
        task.cancel()
    await asyncio.gather(*state.tasks, return_exceptions=True)
    state.tasks.clear()
    for queue in state.queues.values():
        await queue.stop()
    state.queues.clear()
    logger.info("Operator stopped.")
