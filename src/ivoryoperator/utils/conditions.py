"""
Helpers for reading and writing Kubernetes-style status conditions.

Conditions are stored on status objects as plain dictionaries so they can be
sent to the API server unchanged. The helpers follow the semantics of
``meta.SetStatusCondition`` from apimachinery: the transition time only moves
when the status value changes, and writing an identical condition is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data.get("status", CONDITION_UNKNOWN),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=data.get("observedGeneration", 0),
            last_transition_time=data.get("lastTransitionTime"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time or _now(),
        }


def find_condition(
    conditions: List[Dict[str, Any]], condition_type: str
) -> Optional[Condition]:
    """Return the condition of the given type, or None."""
    for item in conditions:
        if item.get("type") == condition_type:
            return Condition.from_dict(item)
    return None


def set_condition(conditions: List[Dict[str, Any]], condition: Condition) -> bool:
    """
    Set ``condition`` in ``conditions`` in place.

    Returns:
        True when the list changed.
    """
    for index, item in enumerate(conditions):
        if item.get("type") != condition.type:
            continue

        existing = Condition.from_dict(item)
        if (
            existing.status == condition.status
            and existing.reason == condition.reason
            and existing.message == condition.message
            and existing.observed_generation == condition.observed_generation
        ):
            return False

        if existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        updated = condition.to_dict()
        conditions[index] = updated
        return True

    conditions.append(condition.to_dict())
    return True

