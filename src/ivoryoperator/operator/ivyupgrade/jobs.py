"""
Job intents for the major-version upgrade.

Both jobs run at most once: ``backoffLimit`` is zero and the controller never
recreates a job that already exists.
"""
from typing import Any, Dict, List, Mapping

from ...crds.const import (
    LABEL_CLUSTER,
    LABEL_IVYUPGRADE,
    LABEL_ROLE,
    LABEL_VERSION,
    ROLE_IVYUPGRADE,
    ROLE_REMOVE_DATA,
)
from ...crds.ivyupgrade import IvyUpgrade

DATA_VOLUME = "ivydata"
DATA_MOUNT_PATH = "/pgdata"
BINDIR_TEMPLATE = "/usr/local/ivorysql/ivorysql-{version}/bin"

UPGRADE_SCRIPT = """\
declare -r data_volume='/pgdata' old_version="$1" new_version="$2" old_bin="$3" new_bin="$4"
printf 'Performing upgrade from version "%s" to "%s" ...\\n\\n' "${old_version}" "${new_version}"
cd "${data_volume}"

echo -e "Step 1: Making new data directory...\\n"
mkdir "${data_volume}/pg${new_version}"

echo -e "Step 2: Initializing new data directory...\\n"
"${new_bin}/initdb" -k -D "${data_volume}/pg${new_version}"

echo -e "\\nStep 3: Setting the expected permissions on the old data directory...\\n"
chmod 700 "${data_volume}/pg${old_version}"

echo -e "Step 4: Copying shared_preload_libraries to the new configuration...\\n"
echo "shared_preload_libraries = '$("${old_bin}/postgres" -D "${data_volume}/pg${old_version}" -C shared_preload_libraries)'" \\
  >> "${data_volume}/pg${new_version}/postgresql.conf"

echo -e "Step 5: Running pg_upgrade check...\\n"
"${new_bin}/pg_upgrade" --old-bindir "${old_bin}" --new-bindir "${new_bin}" \\
  --old-datadir "${data_volume}/pg${old_version}" --new-datadir "${data_volume}/pg${new_version}" \\
  --link --check

echo -e "\\nStep 6: Running pg_upgrade...\\n"
"${new_bin}/pg_upgrade" --old-bindir "${old_bin}" --new-bindir "${new_bin}" \\
  --old-datadir "${data_volume}/pg${old_version}" --new-datadir "${data_volume}/pg${new_version}" \\
  --link

echo -e "\\nStep 7: Copying patroni.dynamic.json...\\n"
cp "${data_volume}/pg${old_version}/patroni.dynamic.json" "${data_volume}/pg${new_version}"

echo -e "\\nUpgrade job complete!"
"""

REMOVE_DATA_SCRIPT = """\
declare -r data_volume='/pgdata' old_version="$1"
printf 'Removing data directory for version "%s" ...\\n\\n' "${old_version}"
rm -rf "${data_volume}/pg${old_version}"
echo -e "\\nRemove data job complete!"
"""


def upgrade_job_name(upgrade: IvyUpgrade) -> str:
    return f"{upgrade.metadata.name}-ivydata"


def remove_data_job_name(upgrade: IvyUpgrade, replica_name: str) -> str:
    return f"{upgrade.metadata.name}-{replica_name}"


def job_labels(upgrade: IvyUpgrade, role: str) -> Dict[str, str]:
    return {
        LABEL_CLUSTER: upgrade.spec.ivory_cluster_name,
        LABEL_IVYUPGRADE: upgrade.metadata.name,
        LABEL_ROLE: role,
        LABEL_VERSION: str(upgrade.spec.to_version),
    }


def _pgdata_claim(instance_name: str) -> str:
    return f"{instance_name}-pgdata"


def _container_defaults(upgrade: IvyUpgrade, image: str) -> Dict[str, Any]:
    container: Dict[str, Any] = {
        "image": upgrade.spec.image or image,
        "securityContext": {
            "allowPrivilegeEscalation": False,
            "privileged": False,
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
        },
        "volumeMounts": [{"name": DATA_VOLUME, "mountPath": DATA_MOUNT_PATH}],
    }
    if upgrade.spec.image_pull_policy:
        container["imagePullPolicy"] = upgrade.spec.image_pull_policy
    if upgrade.spec.resources:
        container["resources"] = upgrade.spec.resources
    return container


def _job(
    upgrade: IvyUpgrade,
    name: str,
    role: str,
    instance: Mapping[str, Any],
    container: Dict[str, Any],
) -> Dict[str, Any]:
    labels = job_labels(upgrade, role)
    # Run where the instance ran so the data volume can be attached.
    pod_spec = dict((instance.get("spec") or {}).get("template", {}).get("spec") or {})
    template_spec: Dict[str, Any] = {
        "restartPolicy": "Never",
        "containers": [container],
        "volumes": [
            {
                "name": DATA_VOLUME,
                "persistentVolumeClaim": {
                    "claimName": _pgdata_claim(instance["metadata"]["name"])
                },
            }
        ],
    }
    for key in ("affinity", "tolerations", "securityContext", "imagePullSecrets"):
        if pod_spec.get(key):
            template_spec[key] = pod_spec[key]

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": name,
            "namespace": upgrade.metadata.namespace,
            "labels": labels,
            "ownerReferences": [upgrade.owner_reference()],
        },
        "spec": {
            "backoffLimit": 0,
            "template": {
                "metadata": {"labels": labels},
                "spec": template_spec,
            },
        },
    }


def _script_command(script: str, args: List[str]) -> List[str]:
    return ["bash", "-ceu", "--", script, "upgrade", *args]


def generate_upgrade_job(
    upgrade: IvyUpgrade, primary: Mapping[str, Any], image: str
) -> Dict[str, Any]:
    """The job that runs pg_upgrade against the primary's data volume."""
    old, new = upgrade.spec.from_version, upgrade.spec.to_version
    container = _container_defaults(upgrade, image)
    container["name"] = "pgupgrade"
    container["command"] = _script_command(
        UPGRADE_SCRIPT,
        [
            str(old),
            str(new),
            BINDIR_TEMPLATE.format(version=old),
            BINDIR_TEMPLATE.format(version=new),
        ],
    )
    return _job(upgrade, upgrade_job_name(upgrade), ROLE_IVYUPGRADE, primary, container)


def generate_remove_data_job(
    upgrade: IvyUpgrade, replica: Mapping[str, Any], image: str
) -> Dict[str, Any]:
    """The job that removes the old data directory of one replica."""
    replica_name = replica["metadata"]["name"]
    container = _container_defaults(upgrade, image)
    container["name"] = "removedata"
    container["command"] = _script_command(
        REMOVE_DATA_SCRIPT, [str(upgrade.spec.from_version)]
    )
    return _job(
        upgrade,
        remove_data_job_name(upgrade, replica_name),
        ROLE_REMOVE_DATA,
        replica,
        container,
    )


def _condition_true(job: Mapping[str, Any], condition_type: str) -> bool:
    for condition in (job.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition.get("status") == "True"
    return False


def job_completed(job: Mapping[str, Any]) -> bool:
    return _condition_true(job, "Complete")


def job_failed(job: Mapping[str, Any]) -> bool:
    return _condition_true(job, "Failed")
