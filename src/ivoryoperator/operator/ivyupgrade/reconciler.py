"""
The IvyUpgrade state machine.

Nothing about progress is stored except status conditions. Every pass
observes the cluster again and walks the same sequence of gates; the first
gate that blocks decides the Progressing condition and ends the pass.
"""
import logging
from enum import Enum
from typing import Optional, Tuple

from kubernetes import client

from ...crds.const import (
    ANNOTATION_ALLOW_UPGRADE,
    BACKUP_REPLICA_CREATE,
    LABEL_IVYUPGRADE,
    LABEL_PGBACKREST_BACKUP,
    LABEL_ROLE,
    ROLE_REMOVE_DATA,
)
from ...crds.ivorycluster import IvoryCluster
from ...crds.ivyupgrade import CONDITION_PROGRESSING, CONDITION_SUCCEEDED, IvyUpgrade
from ...utils.conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    Condition,
    find_condition,
    set_condition,
)
from ...utils.kube import KubeStore, is_conflict, is_not_found
from ..runtime import ReconcileResult, ResourceKey, patch_status_on_exit
from .jobs import (
    generate_remove_data_job,
    generate_upgrade_job,
    job_completed,
    job_failed,
    remove_data_job_name,
    upgrade_job_name,
)
from .world import World, observe_world

REASON_PROGRESSING = "Progressing"
REASON_INVALID = "Invalid"
REASON_OBSERVE_ERROR = "ErrorWhenObservingWorld"
REASON_CLUSTER_NOT_FOUND = "ClusterNotFound"
REASON_RESOLVED = "Resolved"
REASON_COMPLETED = "Completed"
REASON_NOT_SHUTDOWN = "ClusterNotShutdown"
REASON_VERSION_MISMATCH = "VersionMismatch"
REASON_MISSING_ANNOTATION = "AwaitingAuthorization"
REASON_FAILED = "Failed"
REASON_SUCCEEDED = "Succeeded"


class UpgradePhase(str, Enum):
    """Where a pass ended. Only logged; never persisted."""

    INVALID = "Invalid"
    CLUSTER_NOT_FOUND = "ClusterNotFound"
    CLUSTER_NOT_SHUTDOWN = "ClusterNotShutdown"
    AWAITING_AUTHORIZATION = "AwaitingAuthorization"
    VERSION_MISMATCH = "VersionMismatch"
    UPGRADE_IN_PROGRESS = "UpgradeInProgress"
    DATA_CLEANUP_IN_PROGRESS = "DataCleanupInProgress"
    CONSENSUS_CLEANUP = "ConsensusCleanup"
    RESOLVED = "Resolved"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SUCCEEDED = "Succeeded"


def set_progressing_if_reason_was(upgrade: IvyUpgrade, reason: str) -> None:
    """
    Mark the upgrade as progressing, but only when the blocking reason that
    was last recorded is ``reason``. An empty reason matches a missing
    condition.
    """
    progressing = find_condition(upgrade.conditions, CONDITION_PROGRESSING)
    if progressing is None or progressing.reason == reason:
        set_condition(
            upgrade.conditions,
            Condition(
                type=CONDITION_PROGRESSING,
                status=CONDITION_TRUE,
                reason=REASON_PROGRESSING,
                message=f"Upgrade progressing for cluster {upgrade.spec.ivory_cluster_name}",
                observed_generation=upgrade.metadata.generation,
            ),
        )


def _set(upgrade: IvyUpgrade, condition_type: str, status: str, reason: str, message: str) -> None:
    set_condition(
        upgrade.conditions,
        Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=upgrade.metadata.generation,
        ),
    )


def _blocked(upgrade: IvyUpgrade, reason: str, message: str) -> None:
    _set(upgrade, CONDITION_PROGRESSING, CONDITION_FALSE, reason, message)


class IvyUpgradeReconciler:
    def __init__(
        self, store: KubeStore, upgrade_image: str, logger: Optional[logging.Logger] = None
    ) -> None:
        self.store = store
        self.upgrade_image = upgrade_image
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        try:
            obj = self.store.get("IvyUpgrade", key.namespace, key.name)
        except client.ApiException as e:
            # Dependents keep sending events for a while after the upgrade
            # itself is gone.
            if is_not_found(e):
                return ReconcileResult()
            raise

        upgrade = IvyUpgrade.from_dict(obj)
        with patch_status_on_exit(self.store, upgrade, self.logger):
            phase, result = self.step(upgrade)

        self.logger.info(
            f"Reconciled IvyUpgrade '{key}': phase={phase.value}, requeue={result.wants_requeue}"
        )
        return result

    def step(self, upgrade: IvyUpgrade) -> Tuple[UpgradePhase, ReconcileResult]:
        """Advance ``upgrade`` one pass, updating its status in place."""
        done = ReconcileResult()
        spec = upgrade.spec

        # A succeeded upgrade is never revisited. Upgrading again takes a new
        # IvyUpgrade.
        succeeded = find_condition(upgrade.conditions, CONDITION_SUCCEEDED)
        if succeeded is not None and succeeded.reason == REASON_SUCCEEDED:
            return UpgradePhase.SUCCEEDED, done

        set_progressing_if_reason_was(upgrade, "")

        if spec.from_version >= spec.to_version:
            _blocked(
                upgrade,
                REASON_INVALID,
                f"Cannot upgrade from version {spec.from_version} to {spec.to_version}",
            )
            return UpgradePhase.INVALID, done

        set_progressing_if_reason_was(upgrade, REASON_INVALID)

        try:
            world = observe_world(self.store, upgrade)
        except client.ApiException as e:
            _blocked(upgrade, REASON_OBSERVE_ERROR, f"{e.status} {e.reason}")
            raise

        set_progressing_if_reason_was(upgrade, REASON_OBSERVE_ERROR)

        if world.cluster is None:
            _blocked(
                upgrade,
                REASON_CLUSTER_NOT_FOUND,
                world.cluster_not_found or f"IvoryCluster '{spec.ivory_cluster_name}' not found",
            )
            return UpgradePhase.CLUSTER_NOT_FOUND, done

        set_progressing_if_reason_was(upgrade, REASON_CLUSTER_NOT_FOUND)
        return self._drive(upgrade, world.cluster, world)

    def _drive(
        self, upgrade: IvyUpgrade, cluster: IvoryCluster, world: World
    ) -> Tuple[UpgradePhase, ReconcileResult]:
        done = ReconcileResult()
        spec = upgrade.spec

        version = cluster.spec.postgres_version
        status_version = cluster.status_version

        upgrade_job = world.jobs.get(upgrade_job_name(upgrade))
        upgrade_job_complete = upgrade_job is not None and job_completed(upgrade_job)
        upgrade_job_failed = upgrade_job is not None and job_failed(upgrade_job)

        remove_data_completed = 0
        remove_data_failed = False
        for job in world.jobs.values():
            labels = job["metadata"].get("labels") or {}
            if labels.get(LABEL_ROLE) != ROLE_REMOVE_DATA:
                continue
            if labels.get(LABEL_IVYUPGRADE) != upgrade.metadata.name:
                continue
            if job_completed(job):
                remove_data_completed += 1
            elif job_failed(job):
                remove_data_failed = True
        remove_data_complete = remove_data_completed == world.replicas_expected

        # The declared version already matches the target but no upgrade ran
        # here. That is treated as a resolved no-op, not a success.
        if version == spec.to_version and not upgrade_job_complete:
            _blocked(
                upgrade,
                REASON_RESOLVED,
                f"IvoryCluster {spec.ivory_cluster_name} is already running version "
                f"{spec.to_version}",
            )
            return UpgradePhase.RESOLVED, done

        set_progressing_if_reason_was(upgrade, REASON_RESOLVED)

        if status_version == spec.to_version:
            _blocked(
                upgrade,
                REASON_COMPLETED,
                f"IvoryCluster {spec.ivory_cluster_name} is running version {spec.to_version}",
            )
            if upgrade_job_complete and remove_data_complete:
                _set(
                    upgrade,
                    CONDITION_SUCCEEDED,
                    CONDITION_TRUE,
                    REASON_SUCCEEDED,
                    f"IvoryCluster {spec.ivory_cluster_name} is ready to complete upgrade "
                    f"to version {spec.to_version}",
                )
                return UpgradePhase.SUCCEEDED, done
            return UpgradePhase.COMPLETED, done

        # pg_upgrade works on the primary's data directory while the database
        # is stopped, so every instance must be gone first.
        if not world.shutdown or world.primary is None:
            _blocked(upgrade, REASON_NOT_SHUTDOWN, "IvoryCluster instances still running")
            return UpgradePhase.CLUSTER_NOT_SHUTDOWN, done

        set_progressing_if_reason_was(upgrade, REASON_NOT_SHUTDOWN)

        if version != spec.from_version:
            _blocked(
                upgrade,
                REASON_VERSION_MISMATCH,
                f"Current version is {version}, but upgrade expected {spec.from_version}",
            )
            return UpgradePhase.VERSION_MISMATCH, done

        set_progressing_if_reason_was(upgrade, REASON_VERSION_MISMATCH)

        # One upgrade per cluster: the cluster must name this upgrade.
        if cluster.metadata.annotations.get(ANNOTATION_ALLOW_UPGRADE) != upgrade.metadata.name:
            _blocked(
                upgrade,
                REASON_MISSING_ANNOTATION,
                f"IvoryCluster {spec.ivory_cluster_name} lacks annotation for upgrade "
                f"{upgrade.metadata.name}",
            )
            return UpgradePhase.AWAITING_AUTHORIZATION, done

        set_progressing_if_reason_was(upgrade, REASON_MISSING_ANNOTATION)

        # Jobs run once. A failed job fails the upgrade.
        if upgrade_job_failed or remove_data_failed:
            _set(
                upgrade,
                CONDITION_SUCCEEDED,
                CONDITION_FALSE,
                REASON_FAILED,
                "Upgrade jobs failed, please check individual pod logs",
            )
            return UpgradePhase.FAILED, done

        if upgrade_job_complete and remove_data_complete:
            self._finish(upgrade, cluster, world)
            return UpgradePhase.COMPLETED, done

        if not upgrade_job_complete:
            if upgrade_job is None:
                self._create_job(generate_upgrade_job(upgrade, world.primary, self.upgrade_image))
        elif not remove_data_complete:
            for replica in world.replicas:
                name = remove_data_job_name(upgrade, replica["metadata"]["name"])
                if name not in world.jobs:
                    self._create_job(
                        generate_remove_data_job(upgrade, replica, self.upgrade_image)
                    )

        # The upgrade gives the cluster a new system identifier. The old one
        # lives on in the consensus endpoints and is only safe to remove while
        # everything is stopped.
        if world.patroni_endpoints:
            for endpoints in world.patroni_endpoints:
                self.store.delete_exactly(endpoints, logger=self.logger)
            return UpgradePhase.CONSENSUS_CLEANUP, ReconcileResult(requeue=True)

        if not upgrade_job_complete:
            return UpgradePhase.UPGRADE_IN_PROGRESS, done
        return UpgradePhase.DATA_CLEANUP_IN_PROGRESS, done

    def _create_job(self, intent) -> None:
        try:
            self.store.create(intent)
        except client.ApiException as e:
            if is_conflict(e):
                return
            raise
        self.logger.info(f"Job '{intent['metadata']['name']}' created.")

    def _finish(self, upgrade: IvyUpgrade, cluster: IvoryCluster, world: World) -> None:
        """
        Publish the new version on the cluster once all jobs are done.

        Deleting the replica-create backup jobs makes a fresh backup happen
        before replicas are rebuilt from it.
        """
        for job in world.jobs.values():
            labels = job["metadata"].get("labels") or {}
            if labels.get(LABEL_PGBACKREST_BACKUP) == BACKUP_REPLICA_CREATE:
                # Jobs orphan their pods unless told otherwise.
                self.store.delete_exactly(job, propagation_policy="Background", logger=self.logger)

        self.store.patch_status(
            "IvoryCluster",
            cluster.metadata.namespace,
            cluster.metadata.name,
            {
                "status": {
                    "postgresVersion": upgrade.spec.to_version,
                    "pgbackrest": {"repos": []},
                }
            },
        )
        self.logger.info(
            f"IvoryCluster '{cluster.metadata.name}' now reports version {upgrade.spec.to_version}."
        )
