"""
pgMonitor exporter support: the monitoring user's Secret and the SQL that
prepares the database for the exporter sidecar.

The SQL is only executed when its revision changes. The revision is a hash
of everything the SQL action would send to the database plus the image IDs
of the containers involved, and is recorded in the cluster status.
"""
import base64
import hashlib
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...crds.const import (
    CONTAINER_DATABASE,
    CONTAINER_EXPORTER,
    LABEL_CLUSTER,
    LABEL_ROLE,
    ROLE_MONITORING,
)
from ...crds.exec import ExecResult
from ...crds.ivorycluster import IvoryCluster
from ..instances import Instance
from .password import generate_password_and_verifier

MONITORING_USER = "ccp_monitoring"
EXPORTER_DB = "postgres"

# Runs a command with stdin in one container of the writable pod.
Executor = Callable[[str, List[str]], ExecResult]
SQLAction = Callable[[Executor], None]

PSQL_COMMAND = ["psql", "-Xw", "--set=ON_ERROR_STOP=1", "--file=-", f"--dbname={EXPORTER_DB}"]


def exporter_enabled(cluster: IvoryCluster) -> bool:
    return cluster.spec.exporter_enabled


def monitoring_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-monitoring"


def _decode(data: Dict[str, str], key: str) -> str:
    value = data.get(key)
    return base64.b64decode(value).decode() if value else ""


def _encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def build_monitoring_secret_intent(
    cluster: IvoryCluster,
    existing: Optional[Dict[str, Any]],
    generate: Callable[[], Tuple[str, str]] = generate_password_and_verifier,
) -> Dict[str, Any]:
    """
    The Secret holding the monitoring user's password and its verifier.

    Values already stored in ``existing`` are kept so the password does not
    change on every reconcile.
    """
    data = (existing or {}).get("data") or {}
    password, verifier = _decode(data, "password"), _decode(data, "verifier")
    if not password or not verifier:
        password, verifier = generate()

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": monitoring_secret_name(cluster.metadata.name),
            "namespace": cluster.metadata.namespace,
            "labels": {LABEL_CLUSTER: cluster.metadata.name, LABEL_ROLE: ROLE_MONITORING},
            "ownerReferences": [cluster.owner_reference()],
        },
        "type": "Opaque",
        "data": {"password": _encode(password), "verifier": _encode(verifier)},
    }


def secret_verifier(secret: Dict[str, Any]) -> str:
    return _decode(secret.get("data") or {}, "verifier")


def enable_exporter_sql(setup: str, verifier: str) -> str:
    """SQL that is safe to run any number of times."""
    return "\n".join(
        [
            "SET search_path TO '';",
            "SET SESSION check_function_bodies TO false;",
            setup,
            "DO $$",
            "BEGIN",
            f"  IF NOT EXISTS (SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = '{MONITORING_USER}') THEN",
            f"    CREATE ROLE {MONITORING_USER};",
            "  END IF;",
            "END $$;",
            f"ALTER ROLE {MONITORING_USER} LOGIN PASSWORD '{verifier}';",
            f"GRANT pg_monitor TO {MONITORING_USER};",
        ]
    )


def disable_exporter_sql() -> str:
    return "\n".join(
        [
            "SET search_path TO '';",
            "DO $$",
            "BEGIN",
            f"  IF EXISTS (SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = '{MONITORING_USER}') THEN",
            f"    ALTER ROLE {MONITORING_USER} NOLOGIN;",
            "  END IF;",
            "END $$;",
        ]
    )


def get_exporter_setup_sql(exec_: Executor, postgres_version: int) -> str:
    """Read the version-specific setup script shipped in the exporter image."""
    result = exec_("", ["bash", "-ceu", "--", f"cat /opt/cpm/conf/pg{postgres_version}/setup.sql"])
    return result.stdout


def action_revision(action: SQLAction, image_ids: List[str]) -> str:
    """
    Hash what ``action`` would execute without executing anything.
    """
    hasher = hashlib.sha256()

    def hashing_executor(stdin: str, command: List[str]) -> ExecResult:
        hasher.update(stdin.encode())
        hasher.update(repr(command).encode())
        return ExecResult(stdout="", stderr="", returncode=0)

    action(hashing_executor)
    for image_id in image_ids:
        hasher.update(image_id.encode())
    return hasher.hexdigest()[:16]


def reconcile_exporter(
    cluster: IvoryCluster,
    writable: Optional[Instance],
    monitoring_secret: Optional[Dict[str, Any]],
    run_in: Callable[[str, str, List[str]], ExecResult],
    logger: logging.Logger,
) -> None:
    """
    Bring the database in line with the exporter setting of the cluster.

    Args:
        cluster: The cluster; its monitoring status is updated in place.
        writable: The instance that accepts writes. Nothing happens without one.
        monitoring_secret: The monitoring Secret when the exporter is enabled.
        run_in: Runs (container, stdin, command) in the writable pod.
        logger: Logger instance.
    """
    if writable is None:
        logger.info("No writable instance; skipping exporter configuration for now.")
        return

    image_ids: List[str] = []
    enabled = exporter_enabled(cluster)
    if enabled:
        running, known = writable.is_running(CONTAINER_EXPORTER)
        if not (running and known):
            # The exporter container is needed to read setup.sql.
            return
        image_ids = [writable.image_id(CONTAINER_DATABASE), writable.image_id(CONTAINER_EXPORTER)]
        if not all(image_ids):
            return

    setup = ""

    def action(exec_: Executor) -> None:
        if enabled:
            sql = enable_exporter_sql(setup, secret_verifier(monitoring_secret or {}))
        else:
            sql = disable_exporter_sql()
        exec_(sql, PSQL_COMMAND)

    revision = action_revision(action, image_ids)
    recorded = (cluster.status.get("monitoring") or {}).get("exporterConfiguration")
    if revision == recorded:
        return

    logger.info(f"Applying exporter configuration, revision {revision}.")
    if enabled:
        setup = get_exporter_setup_sql(
            lambda stdin, command: run_in(CONTAINER_EXPORTER, stdin, command),
            cluster.spec.postgres_version,
        )
    action(lambda stdin, command: run_in(CONTAINER_DATABASE, stdin, command))
    cluster.status.setdefault("monitoring", {})["exporterConfiguration"] = revision
