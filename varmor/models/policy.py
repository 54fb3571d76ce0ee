"""Types and accessors for VarmorPolicy, VarmorClusterPolicy and ArmorProfile bodies.

Objects travel through the controller as the plain JSON dicts returned by the
Kubernetes API. The helpers here read them without caring whether optional
sections are present.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from varmor.core.errors import ProfileGenerationError

# ============================================================================
# ENUMS
# ============================================================================


class PolicyPhase(str, Enum):
    PENDING = "Pending"
    MODELING = "Modeling"
    COMPLETED = "Completed"
    PROTECTING = "Protecting"
    ERROR = "Error"
    # Sentinel: leave the current phase untouched
    UNCHANGED = "Unchanged"


class ConditionType(str, Enum):
    CREATED = "Created"
    UPDATED = "Updated"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"


class EnforcingMode(str, Enum):
    ALWAYS_ALLOW = "AlwaysAllow"
    RUNTIME_DEFAULT = "RuntimeDefault"
    ENHANCE_PROTECT = "EnhanceProtect"
    DEFENSE_IN_DEPTH = "DefenseInDepth"


# The behavior-modeling mode
MODELING_MODE = EnforcingMode.DEFENSE_IN_DEPTH.value

SUPPORTED_TARGET_KINDS = ("Deployment", "StatefulSet", "DaemonSet", "Pod")

REASON_FORBIDDEN = "Forbidden"
REASON_ERROR = "Error"

# ============================================================================
# DATA CLASSES
# ============================================================================


@dataclass
class PolicyCondition:
    """A single entry of ``status.conditions``"""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = field(default_factory=lambda: now_rfc3339())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": self.last_transition_time,
            "reason": self.reason,
            "message": self.message,
        }


# ============================================================================
# ACCESSORS
# ============================================================================


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("name", "")


def namespace_of(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("namespace") or ""


def resource_version(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("resourceVersion", "")


def spec_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("spec") or {}


def status_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("status") or {}


def target_of(policy: Dict[str, Any]) -> Dict[str, Any]:
    return spec_of(policy).get("target") or {}


def policy_section(policy: Dict[str, Any]) -> Dict[str, Any]:
    return spec_of(policy).get("policy") or {}


def enforcer_of(policy: Dict[str, Any]) -> str:
    return policy_section(policy).get("enforcer", "")


def mode_of(policy: Dict[str, Any]) -> str:
    return policy_section(policy).get("mode", "")


def is_modeling(policy: Dict[str, Any]) -> bool:
    return mode_of(policy) == MODELING_MODE


def modeling_duration(policy: Dict[str, Any]) -> int:
    """Modeling duration (minutes) requested by the policy, 0 when unset.

    Raises:
        ProfileGenerationError: if the duration is not a number
    """
    defense = policy_section(policy).get("defenseInDepth") or {}
    duration = defense.get("modelingDuration") or 0
    try:
        return int(duration)
    except (TypeError, ValueError) as e:
        raise ProfileGenerationError(
            f"defenseInDepth.modelingDuration must be an integer, got {duration!r}"
        ) from e


def phase_of(policy: Dict[str, Any]) -> str:
    return status_of(policy).get("phase", "")


def profile_target(profile: Dict[str, Any]) -> Dict[str, Any]:
    return spec_of(profile).get("target") or {}


def profile_enforcer(profile: Dict[str, Any]) -> str:
    return (spec_of(profile).get("profile") or {}).get("enforcer", "")


def profile_modeling_duration(profile: Dict[str, Any]) -> int:
    modeling = spec_of(profile).get("behaviorModeling") or {}
    return int(modeling.get("modelingDuration") or 0)


def profile_unique_id(profile: Dict[str, Any]) -> str:
    return (spec_of(profile).get("behaviorModeling") or {}).get("uniqueID", "")


def object_key(obj: Dict[str, Any]) -> str:
    """Queue key: ``namespace/name``, or ``name`` for cluster-scoped objects."""
    namespace = namespace_of(obj)
    if namespace:
        return f"{namespace}/{name_of(obj)}"
    return name_of(obj)


def split_key(key: str):
    """Inverse of object_key; returns (namespace, name)."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")
