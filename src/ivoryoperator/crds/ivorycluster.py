"""
Typed view of the IvoryCluster custom resource.

Only the fields of `.spec` that the reconcilers make decisions on are parsed;
everything else is left to the platform and to other controllers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .base import BaseCustomResource, ObjectMeta
from .const import CRD_GROUP, CRD_PLURAL_IVORYCLUSTER, CRD_VERSION

DEFAULT_PORT = 5432


class RepoKind(str, Enum):
    VOLUME = "volume"
    S3 = "s3"
    GCS = "gcs"
    AZURE = "azure"


@dataclass(frozen=True)
class VolumeBackend:
    volume_claim_spec: Mapping[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class S3Backend:
    bucket: str
    endpoint: str = ""
    region: str = ""


@dataclass(frozen=True)
class GCSBackend:
    bucket: str


@dataclass(frozen=True)
class AzureBackend:
    container: str


RepoBackend = Union[VolumeBackend, S3Backend, GCSBackend, AzureBackend]

_BACKEND_KINDS = {
    VolumeBackend: RepoKind.VOLUME,
    S3Backend: RepoKind.S3,
    GCSBackend: RepoKind.GCS,
    AzureBackend: RepoKind.AZURE,
}


@dataclass(frozen=True)
class RepositoryDescriptor:
    """
    A named pgBackRest repository. The backend payload decides the kind, so a
    descriptor can never carry fields of two backends at once. A descriptor
    without a backend is accepted and produces no backend settings.
    """

    name: str
    backend: Optional[RepoBackend] = None

    @property
    def kind(self) -> Optional[RepoKind]:
        if self.backend is None:
            return None
        return _BACKEND_KINDS[type(self.backend)]

    @property
    def is_volume(self) -> bool:
        return self.kind is RepoKind.VOLUME

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryDescriptor":
        name = data["name"]
        present = [key for key in ("volume", "s3", "gcs", "azure") if data.get(key)]
        if len(present) > 1:
            raise ValueError(
                f"Repository '{name}' declares more than one backend: {', '.join(present)}"
            )

        backend: Optional[RepoBackend] = None
        if "volume" in present:
            backend = VolumeBackend(data["volume"].get("volumeClaimSpec", {}))
        elif "s3" in present:
            s3 = data["s3"]
            backend = S3Backend(
                bucket=s3["bucket"],
                endpoint=s3.get("endpoint", ""),
                region=s3.get("region", ""),
            )
        elif "gcs" in present:
            backend = GCSBackend(bucket=data["gcs"]["bucket"])
        elif "azure" in present:
            backend = AzureBackend(container=data["azure"]["container"])
        return cls(name=name, backend=backend)


@dataclass(frozen=True)
class InstanceSet:
    name: str
    replicas: int = 1


@dataclass
class ClusterSpec:
    postgres_version: int
    port: int = DEFAULT_PORT
    instance_sets: List[InstanceSet] = field(default_factory=list)
    repos: List[RepositoryDescriptor] = field(default_factory=list)
    pgbackrest_global: Dict[str, str] = field(default_factory=dict)
    repo_host: bool = False
    exporter_enabled: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterSpec":
        pgbackrest = (data.get("backups") or {}).get("pgbackrest") or {}
        pgmonitor = (data.get("monitoring") or {}).get("pgmonitor") or {}
        exporter = pgmonitor.get("exporter")
        return cls(
            postgres_version=int(data.get("postgresVersion", 0)),
            port=int(data.get("port") or DEFAULT_PORT),
            instance_sets=[
                InstanceSet(name=item.get("name", "00"), replicas=int(item.get("replicas", 1)))
                for item in data.get("instances", [])
            ],
            repos=[RepositoryDescriptor.from_dict(r) for r in pgbackrest.get("repos", [])],
            pgbackrest_global={
                str(k): str(v) for k, v in (pgbackrest.get("global") or {}).items()
            },
            repo_host=pgbackrest.get("repoHost") is not None,
            exporter_enabled=exporter is not None,
        )


@dataclass
class IvoryCluster(BaseCustomResource):
    group = CRD_GROUP
    version = CRD_VERSION
    plural = CRD_PLURAL_IVORYCLUSTER
    kind = "IvoryCluster"
    namespaced = True

    metadata: ObjectMeta
    spec: ClusterSpec
    status: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IvoryCluster":
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=ClusterSpec.from_dict(data.get("spec", {})),
            status=dict(data.get("status") or {}),
        )

    @property
    def status_version(self) -> int:
        return int(self.status.get("postgresVersion") or 0)

    @property
    def startup_instance(self) -> str:
        return self.status.get("startupInstance", "")

    @property
    def dedicated_repo_host_enabled(self) -> bool:
        """A repo host only makes sense when some repository lives on a volume."""
        return self.spec.repo_host and any(repo.is_volume for repo in self.spec.repos)
