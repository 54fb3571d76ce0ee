"""Pytest configuration and shared fixtures for the policy controller tests."""

import copy
import itertools
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from fakeredis import FakeStrictRedis

from varmor.controller import ClusterScope, NamespaceScope, PolicyInformer, PolicyReconciler
from varmor.controller.queue import ItemExponentialFailureRateLimiter
from varmor.core.errors import ConflictError, NotFoundError
from varmor.services.status_manager import RedisStatusMailbox

CONTROLLER_NAMESPACE = "varmor"

# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def fake_redis_session():
    """Single FakeRedis instance for entire test session."""
    return FakeStrictRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def fake_redis(fake_redis_session):
    """
    Function-scoped fixture that clears session redis before each test.
    This ensures test isolation while using a single redis instance.
    """
    fake_redis_session.flushdb()
    yield fake_redis_session


@pytest.fixture
def mailbox(fake_redis):
    """Status mailbox on fake Redis."""
    return RedisStatusMailbox(fake_redis, "test:status:queue", "test-status-events")


@pytest.fixture
def drain_mailbox(mailbox):
    """Return every pending status message as (kind, key) tuples."""

    def drain():
        messages = []
        while True:
            message = mailbox.receive()
            if message is None:
                return messages
            messages.append((message["kind"].value, message["key"]))

    return drain


# ============================================================================
# Kubernetes Fixtures
# ============================================================================


class FakeResourceStore:
    """In-memory stand-in for CustomResourceStore.

    Mimics the API server where it matters to the reconcilers: resource
    versions are bumped on every write, stale writes raise ConflictError,
    spec writes keep the stored status and status writes keep the stored spec.
    """

    def __init__(self, plural: str, namespaced: bool = True):
        self.plural = plural
        self.namespaced = namespaced
        self.objects: Dict[tuple, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self._versions = itertools.count(1)

    def _key(self, name: str, namespace: str) -> tuple:
        return (namespace if self.namespaced else "", name)

    def _body_key(self, body: Dict[str, Any]) -> tuple:
        meta = body.get("metadata") or {}
        return self._key(meta.get("name", ""), meta.get("namespace", ""))

    def _record(self, op: str, key: tuple):
        self.calls.append((op, "/".join(part for part in key if part)))
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def fail_next(self, op: str, exc: Exception):
        """Make the next call of ``op`` raise ``exc``."""
        self.failures.setdefault(op, []).append(exc)

    def writes(self, op: Optional[str] = None) -> List[tuple]:
        ops = {op} if op else {"create", "update", "update_status", "delete"}
        return [call for call in self.calls if call[0] in ops]

    def put(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Seed an object without recording a call."""
        body = copy.deepcopy(body)
        meta = body.setdefault("metadata", {})
        meta["resourceVersion"] = str(next(self._versions))
        meta.setdefault("uid", str(uuid.uuid4()))
        self.objects[self._body_key(body)] = body
        return copy.deepcopy(body)

    def stored(self, name: str, namespace: str = "") -> Optional[Dict[str, Any]]:
        obj = self.objects.get(self._key(name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def get(self, name: str, namespace: str = "") -> Dict[str, Any]:
        key = self._key(name, namespace)
        self._record("get", key)
        if key not in self.objects:
            raise NotFoundError(f"{self.plural} {name} not found", status=404)
        return copy.deepcopy(self.objects[key])

    def list(self, namespace: str = "") -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for (ns, _), obj in sorted(self.objects.items())
            if not namespace or ns == namespace
        ]

    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._body_key(body)
        self._record("create", key)
        if key in self.objects:
            raise ConflictError(f"{self.plural} {key[1]} already exists", status=409)
        body = copy.deepcopy(body)
        body.pop("status", None)
        return self.put(body)

    def _check_version(self, key: tuple, body: Dict[str, Any]) -> Dict[str, Any]:
        if key not in self.objects:
            raise NotFoundError(f"{self.plural} {key[1]} not found", status=404)
        current = self.objects[key]
        sent = (body.get("metadata") or {}).get("resourceVersion")
        if sent and sent != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{self.plural} {key[1]} was modified", status=409)
        return current

    def update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._body_key(body)
        self._record("update", key)
        current = self._check_version(key, body)
        new = copy.deepcopy(body)
        if "status" in current:
            new["status"] = copy.deepcopy(current["status"])
        else:
            new.pop("status", None)
        new["metadata"]["uid"] = current["metadata"].get("uid")
        return self.put(new)

    def update_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._body_key(body)
        self._record("update_status", key)
        current = self._check_version(key, body)
        new = copy.deepcopy(current)
        new["status"] = copy.deepcopy(body.get("status") or {})
        return self.put(new)

    def delete(self, name: str, namespace: str = "") -> Dict[str, Any]:
        key = self._key(name, namespace)
        self._record("delete", key)
        if key not in self.objects:
            raise NotFoundError(f"{self.plural} {name} not found", status=404)
        return self.objects.pop(key)


class RecordingNotifier:
    """WorkloadNotifier stand-in that records calls instead of patching."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def notify(self, namespace, enforcer, target, profile_name, unique_id, bpf_exclusive_mode):
        self.calls.append(
            {
                "namespace": namespace,
                "enforcer": enforcer,
                "target": target,
                "profile_name": profile_name,
                "unique_id": unique_id,
                "bpf_exclusive_mode": bpf_exclusive_mode,
            }
        )


@pytest.fixture
def stores():
    """Fresh in-memory stores for every vArmor kind."""
    return SimpleNamespace(
        policies=FakeResourceStore("varmorpolicies"),
        cluster_policies=FakeResourceStore("varmorclusterpolicies", namespaced=False),
        profiles=FakeResourceStore("armorprofiles"),
        profile_models=FakeResourceStore("armorprofilemodels"),
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def namespace_scope():
    return NamespaceScope(CONTROLLER_NAMESPACE)


@pytest.fixture
def cluster_scope():
    return ClusterScope(CONTROLLER_NAMESPACE)


@pytest.fixture
def make_reconciler(stores, mailbox, notifier):
    """Build a reconciler over the fake stores."""

    def factory(cluster: bool = False, **kwargs) -> PolicyReconciler:
        scope = ClusterScope(CONTROLLER_NAMESPACE) if cluster else NamespaceScope(CONTROLLER_NAMESPACE)
        options = {
            "workload_notifier": notifier,
            "restart_exist_workloads": True,
            "rate_limiter": ItemExponentialFailureRateLimiter(0.001, 0.01),
        }
        options.update(kwargs)
        return PolicyReconciler(
            scope=scope,
            policies=stores.cluster_policies if cluster else stores.policies,
            profiles=stores.profiles,
            profile_models=stores.profile_models,
            informer=PolicyInformer(scope.kind),
            status_mailbox=mailbox,
            **options,
        )

    return factory


# ============================================================================
# Policy Fixtures
# ============================================================================


@pytest.fixture
def make_policy():
    """Build a VarmorPolicy (or VarmorClusterPolicy) body."""

    def factory(
        name: str = "app-policy",
        namespace: str = "default",
        target: Optional[Dict[str, Any]] = None,
        mode: str = "AlwaysAllow",
        enforcer: str = "AppArmor",
        modeling_duration: Optional[int] = None,
        phase: Optional[str] = None,
        cluster: bool = False,
    ) -> Dict[str, Any]:
        policy_section = {"enforcer": enforcer, "mode": mode}
        if modeling_duration is not None:
            policy_section["defenseInDepth"] = {"modelingDuration": modeling_duration}

        metadata = {"name": name, "labels": {"app": "demo"}}
        if not cluster:
            metadata["namespace"] = namespace

        body = {
            "apiVersion": "crd.varmor.org/v1beta1",
            "kind": "VarmorClusterPolicy" if cluster else "VarmorPolicy",
            "metadata": metadata,
            "spec": {
                "target": target if target is not None else {"kind": "Deployment", "name": "app"},
                "policy": policy_section,
            },
        }
        if phase:
            body["status"] = {"phase": phase}
        return body

    return factory


@pytest.fixture
def get_condition():
    """Look up a status condition by type."""

    def lookup(obj, cond_type):
        for condition in (obj.get("status") or {}).get("conditions") or []:
            if condition.get("type") == cond_type:
                return condition
        return None

    return lookup
