"""Unit tests for the policy status reporter."""

import pytest

from varmor.controller.status import StatusReporter
from varmor.core.errors import ConflictError
from varmor.models.policy import ConditionStatus, ConditionType, PolicyPhase


@pytest.mark.unit
class TestStatusReporter:
    """Test status writes on policies."""

    def test_sets_phase_profile_and_ready(self, make_policy, stores):
        """A write stores the phase, profile name and readiness."""
        policy = stores.policies.put(make_policy())
        reporter = StatusReporter(stores.policies)

        reporter.update_policy_status(
            policy,
            "varmor-default-app-policy",
            True,
            PolicyPhase.PENDING,
            ConditionType.CREATED,
            ConditionStatus.TRUE,
        )

        status = stores.policies.stored("app-policy", "default")["status"]
        assert status["phase"] == "Pending"
        assert status["profileName"] == "varmor-default-app-policy"
        assert status["ready"] is False
        assert status["conditions"][0]["type"] == "Created"
        assert status["conditions"][0]["status"] == "True"
        assert status["conditions"][0]["lastTransitionTime"].endswith("Z")

    def test_unchanged_phase_is_kept(self, make_policy, stores):
        """The UNCHANGED sentinel leaves the phase as it was."""
        policy = stores.policies.put(make_policy(phase="Protecting"))
        policy["status"]["ready"] = True
        reporter = StatusReporter(stores.policies)

        reporter.update_policy_status(
            policy, "", False, PolicyPhase.UNCHANGED, ConditionType.UPDATED, ConditionStatus.FALSE
        )

        status = stores.policies.stored("app-policy", "default")["status"]
        assert status["phase"] == "Protecting"
        assert status["ready"] is True
        assert "profileName" not in status

    def test_updated_condition_replaced_in_place(self, make_policy, stores):
        """There is at most one Updated condition."""
        policy = stores.policies.put(make_policy())
        reporter = StatusReporter(stores.policies)

        reporter.update_policy_status(
            policy, "", True, PolicyPhase.PENDING, ConditionType.UPDATED, ConditionStatus.TRUE
        )
        reporter.update_policy_status(
            policy,
            "",
            True,
            PolicyPhase.UNCHANGED,
            ConditionType.UPDATED,
            ConditionStatus.FALSE,
            "Forbidden",
            "nope",
        )

        conditions = stores.policies.stored("app-policy", "default")["status"]["conditions"]
        assert len(conditions) == 1
        assert conditions[0]["status"] == "False"
        assert conditions[0]["message"] == "nope"

    def test_created_conditions_are_appended(self, make_policy, stores):
        """Created conditions accumulate."""
        policy = stores.policies.put(make_policy())
        reporter = StatusReporter(stores.policies)

        for status in (ConditionStatus.FALSE, ConditionStatus.TRUE):
            reporter.update_policy_status(
                policy, "", True, PolicyPhase.PENDING, ConditionType.CREATED, status
            )

        conditions = stores.policies.stored("app-policy", "default")["status"]["conditions"]
        assert [c["status"] for c in conditions] == ["False", "True"]

    def test_policy_refreshed_after_write(self, make_policy, stores):
        """The caller's object carries the new resourceVersion."""
        policy = stores.policies.put(make_policy())
        before = policy["metadata"]["resourceVersion"]

        StatusReporter(stores.policies).update_policy_status(
            policy, "", True, PolicyPhase.PENDING, ConditionType.CREATED, ConditionStatus.TRUE
        )

        assert policy["metadata"]["resourceVersion"] != before
        assert policy == stores.policies.stored("app-policy", "default")

    def test_store_errors_propagate(self, make_policy, stores):
        """Write failures reach the caller."""
        policy = stores.policies.put(make_policy())
        stores.policies.fail_next("update_status", ConflictError("conflict", status=409))

        with pytest.raises(ConflictError):
            StatusReporter(stores.policies).update_policy_status(
                policy, "", True, PolicyPhase.PENDING, ConditionType.CREATED, ConditionStatus.TRUE
            )
