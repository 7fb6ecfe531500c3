import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

# A generic type for BaseCustomResource subclasses
T = TypeVar("T", bound="BaseCustomResource")


@dataclass
class ObjectMeta:
    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resourceVersion: Optional[str] = None
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        """
        Constructs an ObjectMeta from a dictionary, ignoring unknown fields.
        This makes it robust to extra metadata from the Kubernetes API.
        """
        known_field_names = {f.name for f in fields(cls)}
        filtered_data = {
            k: v for k, v in data.items() if k in known_field_names and v is not None
        }
        return cls(**filtered_data)


class BaseCustomResource:
    """
    Common shape of the custom resources the operator reconciles.

    Subclasses parse ``spec`` into typed dataclasses; ``status`` stays a plain
    dictionary so it can be deep-copied, compared and sent back to the API
    server as a merge patch without conversion.
    """

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    metadata: ObjectMeta
    status: Dict[str, Any]

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        raise NotImplementedError

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    @property
    def conditions(self) -> List[Dict[str, Any]]:
        return self.status.setdefault("conditions", [])

    def owner_reference(self) -> Dict[str, Any]:
        """An owner reference that makes this resource the controller of a child."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def status_snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self.status)
