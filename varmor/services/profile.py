"""
ArmorProfile generation.

Compiles the ``spec.policy`` section of a VarmorPolicy or VarmorClusterPolicy
into the ``spec.profile`` section of its ArmorProfile, and builds the
complete ArmorProfile object for newly created policies.
"""

import base64
import copy
import hashlib
import json
import uuid
from typing import Any, Dict, List, Optional

from varmor.core.errors import ProfileGenerationError
from varmor.core.logging import get_logger
from varmor.models.policy import (
    MODELING_MODE,
    EnforcingMode,
    metadata,
    modeling_duration,
    name_of,
    policy_section,
    target_of,
)
from varmor.repositories.kubernetes import CRD_GROUP, CRD_VERSION

logger = get_logger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

# Do not exceed the length of a standard Kubernetes name
MAX_PROFILE_NAME_LENGTH = 63

PROFILE_NAME_TEMPLATE = "varmor-{namespace}-{name}"
CLUSTER_PROFILE_NAME_TEMPLATE = "varmor-cluster-{namespace}-{name}"

SUPPORTED_ENFORCERS = (
    "AppArmor",
    "BPF",
    "Seccomp",
    "AppArmorBPF",
    "AppArmorSeccomp",
    "BPFSeccomp",
    "AppArmorBPFSeccomp",
)

SUPPORTED_MODES = tuple(mode.value for mode in EnforcingMode)

# Rules every RuntimeDefault/EnhanceProtect profile starts from
RUNTIME_DEFAULT_RULES = ("deny-mount-procfs-sysfs", "deny-ptrace-other")


# ============================================================================
# NAMING
# ============================================================================


def generate_armor_profile_name(namespace: str, name: str, cluster: bool) -> str:
    """Deterministic ArmorProfile name for a policy.

    For cluster-scoped policies ``namespace`` is the namespace the profile is
    created in (the controller's own namespace).
    """
    template = CLUSTER_PROFILE_NAME_TEMPLATE if cluster else PROFILE_NAME_TEMPLATE
    return template.format(namespace=namespace, name=name).lower()


def profile_name_budget(namespace: str, cluster: bool) -> int:
    """Number of bytes left for the policy name in a derived profile name."""
    overhead = len(generate_armor_profile_name(namespace, "", cluster))
    return MAX_PROFILE_NAME_LENGTH - overhead


# ============================================================================
# PROFILE COMPILER
# ============================================================================


class ProfileCompiler:
    """Compiles policy specs into ArmorProfile ``spec.profile`` sections."""

    def generate_profile(
        self,
        policy: Dict[str, Any],
        profile_name: str,
        is_create: bool,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Compile ``spec.policy`` into a profile.

        The output depends only on the arguments, so recompiling an unchanged
        policy yields an identical profile.
        """
        logger.debug(f"Compiling profile {profile_name} (create={is_create})")

        try:
            self._validate_policy(policy)

            enforcer = policy["enforcer"]
            mode = policy["mode"]
            rules = self._compile_rules(mode, policy)
            document = {
                "name": profile_name,
                "enforcer": enforcer,
                "mode": mode,
                "rules": rules,
            }
            if extra:
                document["behaviorData"] = extra

            content = json.dumps(document, sort_keys=True, separators=(",", ":"))

            return {
                "name": profile_name,
                "enforcer": enforcer,
                "mode": mode,
                "content": base64.b64encode(content.encode()).decode(),
                "hash": hashlib.sha256(content.encode()).hexdigest()[:16],
            }

        except ProfileGenerationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ProfileGenerationError(f"Failed to generate profile: {e}") from e

    def _validate_policy(self, policy: Dict[str, Any]):
        if not isinstance(policy, dict):
            raise ProfileGenerationError("spec.policy must be an object")

        enforcer = policy.get("enforcer", "")
        if enforcer not in SUPPORTED_ENFORCERS:
            raise ProfileGenerationError(f"Unsupported enforcer: {enforcer!r}")

        mode = policy.get("mode", "")
        if mode not in SUPPORTED_MODES:
            raise ProfileGenerationError(f"Unsupported mode: {mode!r}")

        if mode == MODELING_MODE:
            duration = (policy.get("defenseInDepth") or {}).get("modelingDuration")
            if not isinstance(duration, int) or duration <= 0:
                raise ProfileGenerationError(
                    "defenseInDepth.modelingDuration must be a positive integer"
                )

        enhance = policy.get("enhanceProtect") or {}
        for field in ("hardeningRules", "attackProtectionRules"):
            rules = enhance.get(field, [])
            if not isinstance(rules, list) or not all(isinstance(r, str) for r in rules):
                raise ProfileGenerationError(
                    f"enhanceProtect.{field} must be a list of rule names"
                )

    def _compile_rules(self, mode: str, policy: Dict[str, Any]) -> Dict[str, Any]:
        if mode == EnforcingMode.ALWAYS_ALLOW.value:
            return {"default": "allow"}

        if mode == MODELING_MODE:
            return {
                "default": "complain",
                "modelingDuration": policy["defenseInDepth"]["modelingDuration"],
            }

        hardening: List[str] = list(RUNTIME_DEFAULT_RULES)
        attack_protection: List[str] = []
        privileged = False

        if mode == EnforcingMode.ENHANCE_PROTECT.value:
            enhance = policy.get("enhanceProtect") or {}
            hardening.extend(enhance.get("hardeningRules", []))
            attack_protection = sorted(set(enhance.get("attackProtectionRules", [])))
            privileged = bool(enhance.get("privileged", False))

        return {
            "default": "enforce",
            "hardening": sorted(set(hardening)),
            "attackProtection": attack_protection,
            "privileged": privileged,
        }

    def new_armor_profile(
        self, policy: Dict[str, Any], profile_name: str, profile_namespace: str
    ) -> Dict[str, Any]:
        """Build the ArmorProfile object for a newly created policy."""
        modeling = policy_section(policy).get("mode") == MODELING_MODE

        profile = {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": "ArmorProfile",
            "metadata": {
                "name": profile_name,
                "namespace": profile_namespace,
                "labels": dict(metadata(policy).get("labels") or {}),
            },
            "spec": {
                "target": copy.deepcopy(target_of(policy)),
                "profile": self.generate_profile(
                    policy_section(policy), profile_name, True
                ),
                "behaviorModeling": {
                    "enable": modeling,
                    "modelingDuration": modeling_duration(policy) if modeling else 0,
                    "uniqueID": uuid.uuid4().hex[:16],
                },
            },
        }

        uid = metadata(policy).get("uid")
        if uid:
            profile["metadata"]["ownerReferences"] = [
                {
                    "apiVersion": policy.get("apiVersion", f"{CRD_GROUP}/{CRD_VERSION}"),
                    "kind": policy.get("kind", ""),
                    "name": name_of(policy),
                    "uid": uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ]

        return profile
