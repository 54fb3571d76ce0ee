"""Writes phase, readiness and conditions onto policy status."""

from typing import Any, Dict

from varmor.models.policy import (
    ConditionStatus,
    ConditionType,
    PolicyCondition,
    PolicyPhase,
)
from varmor.repositories.kubernetes import CustomResourceStore


class StatusReporter:
    def __init__(self, store: CustomResourceStore):
        self.store = store

    def update_policy_status(
        self,
        policy: Dict[str, Any],
        profile_name: str,
        reset_ready: bool,
        phase: PolicyPhase,
        cond_type: ConditionType,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> Dict[str, Any]:
        """Record a condition on ``policy`` and persist its status.

        Only ``Updated`` conditions are replaced in place; every other type is
        appended, so a policy can carry several ``Created`` entries.

        ``policy`` is refreshed with the stored object, so later writes in the
        same sync carry the new resourceVersion. Store errors propagate.
        """
        policy_status = policy.setdefault("status", {})
        conditions = policy_status.get("conditions") or []
        condition = PolicyCondition(
            type=cond_type.value,
            status=status.value,
            reason=reason,
            message=message,
        ).to_dict()

        exist = False
        if cond_type == ConditionType.UPDATED:
            for i, c in enumerate(conditions):
                if c.get("type") == ConditionType.UPDATED.value:
                    conditions[i] = condition
                    exist = True
                    break

        if not exist:
            conditions.append(condition)
        policy_status["conditions"] = conditions

        if profile_name:
            policy_status["profileName"] = profile_name
        if reset_ready:
            policy_status["ready"] = False
        if phase != PolicyPhase.UNCHANGED:
            policy_status["phase"] = phase.value

        updated = self.store.update_status(policy)
        if updated:
            policy.clear()
            policy.update(updated)
        return policy
