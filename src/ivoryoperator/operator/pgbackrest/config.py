"""
pgBackRest configuration synthesis.

Every function in this module is pure: given the same cluster declaration it
returns the same section sets, and therefore the same file bodies and hash.
Repositories and hosts are emitted in the order they were declared.
"""
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ...crds.const import (
    ANNOTATION_PGBACKREST_IP_VERSION,
    CONTAINER_PGBACKREST_LOG_DIR,
    LABEL_CLUSTER,
    LABEL_DATA,
    LABEL_PGBACKREST_CONFIG,
)
from ...crds.ivorycluster import (
    AzureBackend,
    GCSBackend,
    IvoryCluster,
    RepositoryDescriptor,
    S3Backend,
    VolumeBackend,
)
from .ini import IniMultiSet, IniSectionSet

DEFAULT_STANZA_NAME = "db"

# Keys of the generated ConfigMap
CM_INSTANCE_KEY = "pgbackrest_instance.conf"
CM_REPO_KEY = "pgbackrest_repo.conf"
CM_SERVER_KEY = "pgbackrest-server.conf"
CONFIG_HASH_KEY = "config-hash"

CONFIG_DIRECTORY = "/etc/pgbackrest/conf.d"
REPO_MOUNT_PATH = "/pgbackrest"
SERVER_MOUNT_PATH = "/etc/pgbackrest/server"
PGDATA_LOG_PATH = "/pgdata/pgbackrest/log"
REPO_LOG_PATH = REPO_MOUNT_PATH + "/{}/log"
SOCKET_DIRECTORY = "/tmp/postgres"

CERT_AUTHORITY_PATH = CONFIG_DIRECTORY + "/~ivory-operator/tls-ca.crt"
CERT_CLIENT_PATH = CONFIG_DIRECTORY + "/~ivory-operator/client-tls.crt"
CERT_CLIENT_KEY_PATH = CONFIG_DIRECTORY + "/~ivory-operator/client-tls.key"
CERT_SERVER_PATH = SERVER_MOUNT_PATH + "/server-tls.crt"
CERT_SERVER_KEY_PATH = SERVER_MOUNT_PATH + "/server-tls.key"

REPO_HOST_USER = "ivory"

GENERATED_WARNING = (
    "# Generated by ivory-operator. DO NOT EDIT.\n"
    "# Your changes will not be saved.\n"
)


class TopologyRole(str, Enum):
    INSTANCE = "instance"
    REPO_HOST = "repo-host"


@dataclass(frozen=True)
class LocalPaths:
    """Where the database lives inside an instance pod."""

    pgdata: str
    port: int
    socket_path: str = SOCKET_DIRECTORY


def data_directory(postgres_version: int) -> str:
    return f"/pgdata/pg{postgres_version}"


def host_fqdn(pod_owner: str, service_name: str, namespace: str, cluster_domain: str) -> str:
    """DNS name of the first pod of a StatefulSet behind a headless Service."""
    return f"{pod_owner}-0.{service_name}.{namespace}.svc.{cluster_domain}"


def repo_path(repo: RepositoryDescriptor) -> str:
    return f"{REPO_MOUNT_PATH}/{repo.name}"


def external_repo_options(repo: RepositoryDescriptor) -> List[Tuple[str, str]]:
    """
    Settings for a cloud repository. Volume repositories and repositories
    without a backend contribute nothing here.
    """
    backend = repo.backend
    prefix = repo.name
    if backend is None or isinstance(backend, VolumeBackend):
        return []
    if isinstance(backend, S3Backend):
        options = [(f"{prefix}-type", "s3"), (f"{prefix}-s3-bucket", backend.bucket)]
        if backend.endpoint:
            options.append((f"{prefix}-s3-endpoint", backend.endpoint))
        if backend.region:
            options.append((f"{prefix}-s3-region", backend.region))
        return options
    if isinstance(backend, GCSBackend):
        return [(f"{prefix}-type", "gcs"), (f"{prefix}-gcs-bucket", backend.bucket)]
    if isinstance(backend, AzureBackend):
        return [(f"{prefix}-type", "azure"), (f"{prefix}-azure-container", backend.container)]
    raise TypeError(f"Unsupported repository backend: {type(backend).__name__}")


def _set_repo_options(global_: IniMultiSet, repo: RepositoryDescriptor) -> None:
    global_.set(f"{repo.name}-path", repo_path(repo))
    for option, value in external_repo_options(repo):
        global_.set(option, value)


def _set_overrides(global_: IniMultiSet, overrides: Mapping[str, str]) -> None:
    # Sorted so the rendered file does not depend on how the mapping was built.
    for option in sorted(overrides):
        global_.set(option, overrides[option])


def _set_tls_client(section: IniMultiSet, prefix: str, host: str) -> None:
    section.set(f"{prefix}-host", host)
    section.set(f"{prefix}-host-type", "tls")
    section.set(f"{prefix}-host-ca-file", CERT_AUTHORITY_PATH)
    section.set(f"{prefix}-host-cert-file", CERT_CLIENT_PATH)
    section.set(f"{prefix}-host-key-file", CERT_CLIENT_KEY_PATH)


def synthesize(
    role: TopologyRole,
    repos: Sequence[RepositoryDescriptor],
    global_overrides: Mapping[str, str],
    local: LocalPaths,
    hosts: Optional[Sequence[str]] = None,
    repo_host: Optional[str] = None,
) -> IniSectionSet:
    """
    Build the pgBackRest sections for one side of the topology.

    Args:
        role: Whether the file is read on a database instance or on the
            dedicated repository host.
        repos: Repositories in declaration order.
        global_overrides: Operator-declared global options; these win.
        local: Data directory, port and socket of the database.
        hosts: Repository host role only. Instance host names, indexed
            1..N in the given order.
        repo_host: Instance role only. Host name of the dedicated repository
            host, when there is one.
    """
    sections = IniSectionSet()
    global_ = sections.section("global")
    stanza = sections.section(DEFAULT_STANZA_NAME)

    if role is TopologyRole.INSTANCE:
        # Commands run on an instance log to the data volume.
        global_.set("log-path", PGDATA_LOG_PATH)

        for repo in repos:
            _set_repo_options(global_, repo)
            # Only volume repositories are ever reached through a repo host.
            if repo_host and repo.is_volume:
                _set_tls_client(global_, repo.name, repo_host)
                global_.set(f"{repo.name}-host-user", REPO_HOST_USER)

        _set_overrides(global_, global_overrides)

        # The local database is always index 1; pgBackRest reserves it for
        # the host the command runs on.
        stanza.set("pg1-path", local.pgdata)
        stanza.set("pg1-port", str(local.port))
        stanza.set("pg1-socket-path", local.socket_path)
        return sections

    log_path_set = False
    for repo in repos:
        _set_repo_options(global_, repo)
        if not log_path_set and repo.is_volume:
            global_.set("log-path", REPO_LOG_PATH.format(repo.name))
            log_path_set = True

    _set_overrides(global_, global_overrides)

    for index, host in enumerate(hosts or [], start=1):
        prefix = f"pg{index}"
        _set_tls_client(stanza, prefix, host)
        stanza.set(f"{prefix}-path", local.pgdata)
        stanza.set(f"{prefix}-port", str(local.port))
        stanza.set(f"{prefix}-socket-path", local.socket_path)

    return sections


def client_common_name(cluster: IvoryCluster) -> str:
    return f"pgbackrest@{cluster.metadata.uid}"


def server_config(cluster: IvoryCluster) -> IniSectionSet:
    """Options for the pgBackRest TLS server that runs beside the database."""
    sections = IniSectionSet()
    global_ = sections.section("global")
    server = sections.section("global:server")

    # Bind the IPv4 wildcard unless the cluster opts in to IPv6.
    global_.set("tls-server-address", "0.0.0.0")
    if cluster.metadata.annotations.get(ANNOTATION_PGBACKREST_IP_VERSION, "").lower() == "ipv6":
        global_.set("tls-server-address", "::")

    # Commands such as "info" omit the stanza, so the client certificate must
    # be authorized for every stanza.
    global_.add("tls-server-auth", f"{client_common_name(cluster)}=*")

    global_.set("tls-server-ca-file", CERT_AUTHORITY_PATH)
    global_.set("tls-server-cert-file", CERT_SERVER_PATH)
    global_.set("tls-server-key-file", CERT_SERVER_KEY_PATH)

    # stderr gets errors, stdout gets warnings and below; nothing to files.
    server.set("log-level-console", "detail")
    server.set("log-level-stderr", "error")
    server.set("log-level-file", "off")
    server.set("log-timestamp", "n")
    return sections


def render(sections: IniSectionSet) -> str:
    return GENERATED_WARNING + str(sections)


def config_hash(files: Mapping[str, str]) -> str:
    """A stable content hash over the generated files."""
    payload = json.dumps(dict(sorted(files.items())), separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def config_map_name(cluster_name: str) -> str:
    return f"{cluster_name}-pgbackrest-config"


def repo_host_name(cluster_name: str) -> str:
    return f"{cluster_name}-repo-host"


def service_name(cluster_name: str) -> str:
    return f"{cluster_name}-pods"


def create_config_map_intent(
    cluster: IvoryCluster,
    instance_names: Sequence[str],
    cluster_domain: str,
) -> Dict[str, Any]:
    """
    The ConfigMap holding every pgBackRest file for the cluster.

    Args:
        cluster: The cluster being reconciled.
        instance_names: Names of the instance StatefulSets, in a stable order.
        cluster_domain: DNS domain of the Kubernetes cluster.
    """
    name = cluster.metadata.name
    namespace = cluster.metadata.namespace
    service = service_name(name)
    local = LocalPaths(
        pgdata=data_directory(cluster.spec.postgres_version),
        port=cluster.spec.port,
    )
    dedicated = cluster.dedicated_repo_host_enabled
    repo_host = (
        host_fqdn(repo_host_name(name), service, namespace, cluster_domain) if dedicated else None
    )

    data: Dict[str, str] = {
        CM_INSTANCE_KEY: render(
            synthesize(
                TopologyRole.INSTANCE,
                cluster.spec.repos,
                cluster.spec.pgbackrest_global,
                local,
                repo_host=repo_host,
            )
        ),
        # Instances that have not rolled out yet still mount this file, so it
        # exists even without a repo host.
        CM_SERVER_KEY: "",
    }

    if dedicated:
        data[CM_SERVER_KEY] = render(server_config(cluster))
        hosts = [host_fqdn(n, service, namespace, cluster_domain) for n in instance_names]
        data[CM_REPO_KEY] = render(
            synthesize(
                TopologyRole.REPO_HOST,
                cluster.spec.repos,
                cluster.spec.pgbackrest_global,
                local,
                hosts=hosts,
            )
        )

    data[CONFIG_HASH_KEY] = config_hash(data)

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": config_map_name(name),
            "namespace": namespace,
            "labels": {LABEL_CLUSTER: name, LABEL_PGBACKREST_CONFIG: ""},
            "ownerReferences": [cluster.owner_reference()],
        },
        "data": data,
    }


def log_dir_init_container(
    repos: Sequence[RepositoryDescriptor],
    image: str,
    image_pull_policy: Optional[str] = None,
    resources: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Init container for the dedicated repo host that creates the log directory
    of the first volume repository, the same path ``synthesize`` writes as
    ``log-path`` for that role.
    """
    log_path = ""
    for repo in repos:
        if repo.is_volume:
            log_path = REPO_LOG_PATH.format(repo.name)
            break

    container: Dict[str, Any] = {
        "name": CONTAINER_PGBACKREST_LOG_DIR,
        "image": image,
        "command": ["bash", "-c", "mkdir -p " + log_path],
        "securityContext": {
            "allowPrivilegeEscalation": False,
            "privileged": False,
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
        },
    }
    if image_pull_policy:
        container["imagePullPolicy"] = image_pull_policy
    if resources:
        # Same resources as the repo host's pgbackrest container.
        container["resources"] = resources
    return container


# Runs after pgBackRest has restored files. The database is started in
# recovery with the smallest settings pg_controldata allows, and restarted
# with new ones whenever replayed WAL raises them. Paused replay is resumed.
# The data directory is finally renamed for Patroni's "existing" bootstrap.
_RESTORE_SCRIPT = """declare -r pgdata="$1" opts="$2"
install --directory --mode=0700 "${{pgdata}}"{tablespaces}
rm -f "${{pgdata}}/postmaster.pid"
bash -xc "pgbackrest restore ${{opts}}"
rm -f "${{pgdata}}/patroni.dynamic.json"
export PGDATA="${{pgdata}}" PGHOST='/tmp'

until [ "${{recovery=}}" = 'f' ]; do
if [ -z "${{recovery}}" ]; then
control=$(pg_controldata)
read -r max_conn <<< "${{control##*max_connections setting:}}"
read -r max_lock <<< "${{control##*max_locks_per_xact setting:}}"
read -r max_ptxn <<< "${{control##*max_prepared_xacts setting:}}"
read -r max_work <<< "${{control##*max_worker_processes setting:}}"
echo > /tmp/pg_hba.restore.conf 'local all "ivorysql" peer'
cat > /tmp/ivory.restore.conf <<EOF
archive_command = 'false'
archive_mode = 'on'
hba_file = '/tmp/pg_hba.restore.conf'
max_connections = '${{max_conn}}'
max_locks_per_transaction = '${{max_lock}}'
max_prepared_transactions = '${{max_ptxn}}'
max_worker_processes = '${{max_work}}'
unix_socket_directories = '/tmp'
EOF
if [ "$(< "${{pgdata}}/PG_VERSION")" -ge 12 ]; then
read -r max_wals <<< "${{control##*max_wal_senders setting:}}"
echo >> /tmp/ivory.restore.conf "max_wal_senders = '${{max_wals}}'"
fi

pg_ctl start --silent --timeout=31536000 --wait --options='--config-file=/tmp/ivory.restore.conf'
fi

recovery=$(psql -Atc "SELECT CASE
  WHEN NOT pg_catalog.pg_is_in_recovery() THEN false
  WHEN NOT pg_catalog.pg_is_wal_replay_paused() THEN true
  ELSE pg_catalog.pg_wal_replay_resume()::text = ''
END recovery" && sleep 1) || true
done

pg_ctl stop --silent --wait --timeout=31536000
mv "${{pgdata}}" "${{pgdata}}_bootstrap\""""


def restore_command(
    pgdata: str, tablespace_volumes: Sequence[Mapping[str, Any]], *args: str
) -> List[str]:
    """
    The command that restores ``pgdata`` with pgBackRest and leaves it ready
    to bootstrap a new cluster.

    Args:
        pgdata: Data directory to restore into.
        tablespace_volumes: PersistentVolumeClaims of the tablespaces; each
            is created under ``/tablespaces/<data label>/data``.
        args: Extra arguments for the script, the first being the options
            passed to ``pgbackrest restore``.
    """
    tablespaces = "".join(
        "\ninstall --directory --mode=0700 '/tablespaces/{}/data'".format(
            ((volume.get("metadata") or {}).get("labels") or {}).get(LABEL_DATA, "")
        )
        for volume in tablespace_volumes
    )
    script = _RESTORE_SCRIPT.format(tablespaces=tablespaces)
    return ["bash", "-ceu", "--", script, "-", pgdata, *args]


# Polls the mtimes of the server config and certificates using a bash builtin
# read timeout, and sends SIGHUP to the TLS server when either changes.
_RELOAD_SCRIPT = """
exec {fd}<> <(:)
until read -r -t 5 -u "${fd}"; do
  if
    [ "${filename}" -nt "/proc/self/fd/${fd}" ] &&
    pkill -HUP --exact --parent=0 pgbackrest
  then
    exec {fd}>&- && exec {fd}<> <(:)
    stat --dereference --format='Loaded configuration dated %y' "${filename}"
  elif
    { [ "${directory}" -nt "/proc/self/fd/${fd}" ] ||
      [ "${authority}" -nt "/proc/self/fd/${fd}" ]
    } &&
    pkill -HUP --exact --parent=0 pgbackrest
  then
    exec {fd}>&- && exec {fd}<> <(:)
    stat --format='Loaded certificates dated %y' "${directory}"
  fi
done
"""


def reload_command(name: str) -> List[str]:
    """
    Sidecar entrypoint that makes the pgBackRest TLS server reload its options
    and certificates when they change. The process shows up as ``name``.
    """
    # Wrapped in a function so ps and top show only the name.
    wrapper = (
        "monitor() {" + _RELOAD_SCRIPT + "};"
        ' export directory="$1" authority="$2" filename="$3"; export -f monitor;'
        ' exec -a "$0" bash -ceu monitor'
    )
    return [
        "bash",
        "-ceu",
        "--",
        wrapper,
        name,
        SERVER_MOUNT_PATH,
        CERT_AUTHORITY_PATH,
        f"{CONFIG_DIRECTORY}/{CM_SERVER_KEY}",
    ]
