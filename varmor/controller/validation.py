"""Creation and mutation rules for policies.

``check_create`` and ``check_update`` are pure and return a ``Rejection`` or
``None``. ``ValidationGate`` applies them and records rejections on the
policy status.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from varmor.controller.scope import PolicyScope
from varmor.controller.status import StatusReporter
from varmor.core import metrics
from varmor.core.errors import ResourceStoreError
from varmor.models.policy import (
    REASON_FORBIDDEN,
    SUPPORTED_TARGET_KINDS,
    ConditionStatus,
    ConditionType,
    PolicyPhase,
    enforcer_of,
    is_modeling,
    modeling_duration,
    name_of,
    namespace_of,
    phase_of,
    profile_enforcer,
    profile_modeling_duration,
    profile_target,
    target_of,
)
from varmor.services.profile import MAX_PROFILE_NAME_LENGTH

RECREATE_HINT = "You need to recreate the {kind} object."


@dataclass
class Rejection:
    """Why a policy change is not applied."""

    error: str
    message: str = ""
    reset_ready: bool = True
    # Nothing to do, and nothing to report either
    silent: bool = False


def check_create(
    policy: Dict[str, Any], scope: PolicyScope, enable_defense_in_depth: bool
) -> Optional[Rejection]:
    target = target_of(policy)

    if target.get("kind") not in SUPPORTED_TARGET_KINDS:
        return Rejection(
            "target.kind is not supported", "This kind of target is not supported."
        )

    if not target.get("name") and target.get("selector") is None:
        return Rejection(
            "target.name and target.selector are empty",
            "You should specify the target workload by name or selector.",
        )

    if target.get("name") and target.get("selector") is not None:
        return Rejection(
            "target.name and target.selector are exclusive",
            "You shouldn't specify the target workload by both name and selector.",
        )

    if is_modeling(policy) and not scope.supports_modeling(enable_defense_in_depth):
        return Rejection(
            "the DefenseInDepth mode is not enabled", scope.modeling_rejection()
        )

    namespace = namespace_of(policy)
    profile_name = scope.profile_name(namespace, name_of(policy))
    if len(profile_name) > MAX_PROFILE_NAME_LENGTH:
        return Rejection(
            f"the length of ArmorProfile name exceeds {MAX_PROFILE_NAME_LENGTH}. "
            f"name: {profile_name}, length: {len(profile_name)}",
            f"The length of {scope.kind} object name is too long, please limit "
            f"it to {scope.name_budget(namespace)} bytes",
        )

    return None


def check_update(
    policy: Dict[str, Any], profile: Dict[str, Any], scope: PolicyScope
) -> Optional[Rejection]:
    hint = RECREATE_HINT.format(kind=scope.kind)

    if target_of(policy) != profile_target(profile):
        return Rejection(
            "modify spec.target is forbidden",
            f"Modify the target of {scope.kind} is not allowed. {hint}",
        )

    if is_modeling(policy) and profile_modeling_duration(profile) == 0:
        return Rejection(
            "disallow switch spec.policy.mode from others to DefenseInDepth",
            f"Switch the mode from others to DefenseInDepth is not allowed. {hint}",
        )

    if not is_modeling(policy) and profile_modeling_duration(profile) != 0:
        return Rejection(
            "disallow switch spec.policy.mode from DefenseInDepth to others",
            f"Switch the mode from DefenseInDepth to others is not allowed. {hint}",
        )

    if is_modeling(policy) and phase_of(policy) in (
        PolicyPhase.COMPLETED.value,
        PolicyPhase.PROTECTING.value,
    ):
        return Rejection(
            "disallow modify the policy that runs as DefenseInDepth mode and "
            "already completed",
            f"Modify the {scope.kind} that run as DefenseInDepth mode and already "
            f"completed is not allowed. {hint}",
            reset_ready=False,
        )

    if (
        is_modeling(policy)
        and phase_of(policy) == PolicyPhase.MODELING.value
        and modeling_duration(policy) == profile_modeling_duration(profile)
    ):
        return Rejection("nothing needs to be updated (duration is not changed)", silent=True)

    if enforcer_of(policy) != profile_enforcer(profile):
        return Rejection(
            "disallow switch the enforcer",
            f"Switch the enforcer is not allowed. {hint}",
        )

    return None


class ValidationGate:
    def __init__(
        self,
        scope: PolicyScope,
        reporter: StatusReporter,
        enable_defense_in_depth: bool = False,
    ):
        self.scope = scope
        self.reporter = reporter
        self.enable_defense_in_depth = enable_defense_in_depth

    def ignore_add(self, policy: Dict[str, Any], logger) -> bool:
        """True if the policy must not get a profile.

        The rejection is recorded as an ``Error`` phase with a ``Created``
        condition. Failing to record it is logged but not retried.
        """
        rejection = check_create(policy, self.scope, self.enable_defense_in_depth)
        if rejection is None:
            return False

        metrics.validation_rejections.labels(scope=self.scope.name, operation="create").inc()
        logger.error(f"{rejection.error}; update {self.scope.kind}/status with forbidden info")
        try:
            self.reporter.update_policy_status(
                policy,
                "",
                True,
                PolicyPhase.ERROR,
                ConditionType.CREATED,
                ConditionStatus.FALSE,
                REASON_FORBIDDEN,
                rejection.message,
            )
        except ResourceStoreError as e:
            logger.error(f"update_policy_status() failed: {e}")
        return True

    def ignore_update(
        self, policy: Dict[str, Any], profile: Dict[str, Any], logger
    ) -> bool:
        """True if the update must not be applied.

        A rejection is recorded as an ``Updated`` condition, leaving the phase
        alone. Errors writing it propagate so the key is retried.
        """
        rejection = check_update(policy, profile, self.scope)
        if rejection is None:
            return False

        if rejection.silent:
            logger.info(rejection.error)
            return True

        metrics.validation_rejections.labels(scope=self.scope.name, operation="update").inc()
        logger.error(f"{rejection.error}; update {self.scope.kind}/status with forbidden info")
        self.reporter.update_policy_status(
            policy,
            "",
            rejection.reset_ready,
            PolicyPhase.UNCHANGED,
            ConditionType.UPDATED,
            ConditionStatus.FALSE,
            REASON_FORBIDDEN,
            rejection.message,
        )
        return True
