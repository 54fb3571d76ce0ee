"""Scope strategies: where a policy's profile lives and how it is addressed."""

from varmor.services.profile import generate_armor_profile_name, profile_name_budget


class PolicyScope:
    """Everything that differs between VarmorPolicy and VarmorClusterPolicy."""

    name = ""
    kind = ""
    cluster = False

    def __init__(self, controller_namespace: str):
        self.controller_namespace = controller_namespace

    @property
    def queue_name(self) -> str:
        return f"{self.name}-policy"

    def profile_namespace(self, policy_namespace: str) -> str:
        raise NotImplementedError

    def workload_namespace(self, policy_namespace: str) -> str:
        """Namespace searched for target workloads; empty means all."""
        raise NotImplementedError

    def profile_name(self, policy_namespace: str, policy_name: str) -> str:
        return generate_armor_profile_name(
            self.profile_namespace(policy_namespace), policy_name, self.cluster
        )

    def name_budget(self, policy_namespace: str) -> int:
        return profile_name_budget(self.profile_namespace(policy_namespace), self.cluster)

    def status_key(self, policy_namespace: str, policy_name: str) -> str:
        """Key the status manager files this policy's status under."""
        if self.cluster or not policy_namespace:
            return policy_name
        return f"{policy_namespace}/{policy_name}"

    def supports_modeling(self, enabled: bool) -> bool:
        return False

    def modeling_rejection(self) -> str:
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} {self.kind}>"


class NamespaceScope(PolicyScope):
    name = "namespace"
    kind = "VarmorPolicy"
    cluster = False

    def profile_namespace(self, policy_namespace: str) -> str:
        return policy_namespace

    def workload_namespace(self, policy_namespace: str) -> str:
        return policy_namespace

    def supports_modeling(self, enabled: bool) -> bool:
        return enabled

    def modeling_rejection(self) -> str:
        return "The DefenseInDepth feature is not enabled."


class ClusterScope(PolicyScope):
    name = "cluster"
    kind = "VarmorClusterPolicy"
    cluster = True

    def profile_namespace(self, policy_namespace: str) -> str:
        return self.controller_namespace

    def workload_namespace(self, policy_namespace: str) -> str:
        return ""

    def modeling_rejection(self) -> str:
        return (
            "The DefenseInDepth feature is not supported for the "
            "VarmorClusterPolicy controller."
        )
