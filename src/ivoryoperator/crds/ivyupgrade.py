from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .base import BaseCustomResource, ObjectMeta
from .const import CRD_GROUP, CRD_PLURAL_IVYUPGRADE, CRD_VERSION

CONDITION_PROGRESSING = "Progressing"
CONDITION_SUCCEEDED = "Succeeded"


@dataclass
class UpgradeSpec:
    ivory_cluster_name: str
    from_version: int
    to_version: int
    image: Optional[str] = None
    image_pull_policy: Optional[str] = None
    resources: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpgradeSpec":
        return cls(
            ivory_cluster_name=data["ivoryClusterName"],
            from_version=int(data["fromIvoryVersion"]),
            to_version=int(data["toIvoryVersion"]),
            image=data.get("image"),
            image_pull_policy=data.get("imagePullPolicy"),
            resources=dict(data.get("resources") or {}),
        )


@dataclass
class IvyUpgrade(BaseCustomResource):
    group = CRD_GROUP
    version = CRD_VERSION
    plural = CRD_PLURAL_IVYUPGRADE
    kind = "IvyUpgrade"
    namespaced = True

    metadata: ObjectMeta
    spec: UpgradeSpec
    status: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IvyUpgrade":
        return cls(
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=UpgradeSpec.from_dict(data["spec"]),
            status=dict(data.get("status") or {}),
        )
