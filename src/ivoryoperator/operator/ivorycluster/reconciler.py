"""
Reconciliation of the IvoryCluster pieces owned by this operator: the
pgBackRest configuration, the monitoring Secret, and the exporter SQL.
"""
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client

from ...crds.const import LABEL_CLUSTER
from ...crds.errors import PodExecError
from ...crds.exec import ExecResult
from ...crds.ivorycluster import IvoryCluster
from ...utils.conditions import CONDITION_FALSE, CONDITION_TRUE, Condition, set_condition
from ...utils.kube import KubeStore, is_not_found
from ..exec import PodExecutor
from ..instances import Instance, ObservedInstances
from ..pgbackrest.config import create_config_map_intent
from ..runtime import ReconcileResult, ResourceKey, patch_status_on_exit
from .pgmonitor import build_monitoring_secret_intent, exporter_enabled, monitoring_secret_name, reconcile_exporter

CONDITION_PGBACKREST_READY = "PGBackRestReady"


class IvoryClusterReconciler:
    def __init__(
        self,
        store: KubeStore,
        executor: PodExecutor,
        cluster_domain: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.cluster_domain = cluster_domain
        self.logger = logger or logging.getLogger(__name__)

    def observe_instances(self, cluster: IvoryCluster) -> ObservedInstances:
        selector = {LABEL_CLUSTER: cluster.metadata.name}
        namespace = cluster.metadata.namespace
        pods = self.store.list("Pod", namespace, selector)
        runners = self.store.list("StatefulSet", namespace, selector)
        return ObservedInstances.from_objects(pods, runners)

    def reconcile_pgbackrest_config(
        self, cluster: IvoryCluster, instances: ObservedInstances
    ) -> Dict[str, Any]:
        intent = create_config_map_intent(cluster, instances.names, self.cluster_domain)
        try:
            applied = self.store.apply(intent, self.logger)
        except client.ApiException as e:
            set_condition(
                cluster.conditions,
                Condition(
                    type=CONDITION_PGBACKREST_READY,
                    status=CONDITION_FALSE,
                    reason="ApplyFailed",
                    message=f"Unable to apply pgBackRest configuration: {e.reason}",
                    observed_generation=cluster.metadata.generation,
                ),
            )
            raise

        set_condition(
            cluster.conditions,
            Condition(
                type=CONDITION_PGBACKREST_READY,
                status=CONDITION_TRUE,
                reason="ConfigurationApplied",
                message="pgBackRest configuration is up to date",
                observed_generation=cluster.metadata.generation,
            ),
        )
        return applied

    def reconcile_monitoring_secret(self, cluster: IvoryCluster) -> Optional[Dict[str, Any]]:
        """Ensure the monitoring Secret exists when the exporter is enabled, and not otherwise."""
        namespace = cluster.metadata.namespace
        name = monitoring_secret_name(cluster.metadata.name)
        existing: Optional[Dict[str, Any]] = None
        try:
            existing = self.store.get("Secret", namespace, name)
        except client.ApiException as e:
            if not is_not_found(e):
                raise

        if not exporter_enabled(cluster):
            if existing is not None and self._controlled_by(existing, cluster):
                existing.setdefault("kind", "Secret")
                self.store.delete_exactly(existing, logger=self.logger)
            return None

        intent = build_monitoring_secret_intent(cluster, existing)
        return self.store.apply(intent, self.logger)

    @staticmethod
    def _controlled_by(obj: Dict[str, Any], cluster: IvoryCluster) -> bool:
        return any(
            ref.get("uid") == cluster.metadata.uid and ref.get("controller")
            for ref in obj["metadata"].get("ownerReferences") or []
        )

    def _run_in(self, pod: Dict[str, Any]):
        meta = pod["metadata"]

        def run(container: str, stdin: str, command: List[str]) -> ExecResult:
            return self.executor.exec(
                meta["namespace"],
                meta["name"],
                container,
                command,
                stdin=stdin or None,
                logger=self.logger,
            )

        return run

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        try:
            obj = self.store.get("IvoryCluster", key.namespace, key.name)
        except client.ApiException as e:
            if is_not_found(e):
                # Dependents are garbage collected through owner references.
                return ReconcileResult()
            raise

        cluster = IvoryCluster.from_dict(obj)
        with patch_status_on_exit(self.store, cluster, self.logger):
            instances = self.observe_instances(cluster)
            self.reconcile_pgbackrest_config(cluster, instances)
            secret = self.reconcile_monitoring_secret(cluster)

            writable: Optional[Instance] = instances.writable()
            if writable is None:
                return ReconcileResult()

            # The upgrade controller starts from this instance once the
            # cluster has been shut down.
            if cluster.startup_instance != writable.name:
                cluster.status["startupInstance"] = writable.name

            try:
                reconcile_exporter(
                    cluster, writable, secret, self._run_in(writable.pods[0]), self.logger
                )
            except PodExecError as e:
                self.logger.error(f"Exporter configuration failed: {e}; stderr: {e.stderr}")
                raise

        self.logger.info(f"Reconciled IvoryCluster '{key}'.")
        return ReconcileResult()
