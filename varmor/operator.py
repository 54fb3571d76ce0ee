"""
vArmor policy controller operator.

kopf watches VarmorPolicy and VarmorClusterPolicy objects and feeds every
event into an informer cache; one PolicyReconciler per scope drains its own
work queue on background threads.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import kopf
from kubernetes import client
from redis.exceptions import RedisError

from varmor.controller import ClusterScope, NamespaceScope, PolicyInformer, PolicyReconciler
from varmor.core.config import Settings, get_settings
from varmor.core.errors import ResourceStoreError
from varmor.core.logging import get_logger, setup_logging
from varmor.db.redis import close_redis_connection, get_redis_client
from varmor.repositories.kubernetes import (
    CRD_GROUP,
    CRD_VERSION,
    VARMOR_CLUSTER_POLICIES,
    VARMOR_POLICIES,
    VarmorRepository,
    load_kube_config,
)
from varmor.services.status_manager import RedisStatusMailbox
from varmor.services.workloads import WorkloadNotifier

logger = get_logger("varmor.operator")


@dataclass
class Runtime:
    """Controller state shared between kopf handlers."""

    stop_event: threading.Event = field(default_factory=threading.Event)
    reconcilers: Dict[str, PolicyReconciler] = field(default_factory=dict)
    threads: List[threading.Thread] = field(default_factory=list)
    notifier: Optional[WorkloadNotifier] = None


runtime = Runtime()


def build_reconcilers(
    settings: Settings,
    repository: VarmorRepository,
    mailbox: RedisStatusMailbox,
    notifier: Optional[WorkloadNotifier],
) -> Dict[str, PolicyReconciler]:
    """One reconciler per policy kind, keyed by the kind's plural."""
    scopes = {
        VARMOR_POLICIES: (NamespaceScope(settings.namespace), repository.policies),
        VARMOR_CLUSTER_POLICIES: (
            ClusterScope(settings.namespace),
            repository.cluster_policies,
        ),
    }

    reconcilers = {}
    for plural, (scope, store) in scopes.items():
        reconcilers[plural] = PolicyReconciler(
            scope=scope,
            policies=store,
            profiles=repository.profiles,
            profile_models=repository.profile_models,
            informer=PolicyInformer(scope.kind),
            status_mailbox=mailbox,
            workload_notifier=notifier,
            restart_exist_workloads=settings.restart_exist_workloads,
            enable_defense_in_depth=settings.enable_defense_in_depth,
            bpf_exclusive_mode=settings.bpf_exclusive_mode,
            cache_sync_timeout=settings.cache_sync_timeout,
        )
    return reconcilers


# ============================================================================
# STARTUP AND SHUTDOWN
# ============================================================================


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    """Configure kopf settings"""
    settings.posting.enabled = False
    settings.watching.server_timeout = 300
    settings.watching.client_timeout = 310
    settings.watching.connect_timeout = 10
    settings.batching.idle_timeout = 1.0
    settings.batching.batch_window = 0.5

    logger.info("Kopf configured with API server protection settings")


@kopf.on.startup()
def start_controllers(**_):
    """Seed the informers and start the reconcilers"""
    settings = get_settings()
    logger.info(f"Policy controller starting up in namespace {settings.namespace}")

    api_client = load_kube_config()
    repository = VarmorRepository(api_client)
    mailbox = RedisStatusMailbox(
        get_redis_client(), settings.status_queue_key, settings.status_channel
    )
    if settings.restart_exist_workloads:
        runtime.notifier = WorkloadNotifier(
            client.AppsV1Api(api_client), settings.workload_restart_workers
        )

    runtime.reconcilers = build_reconcilers(settings, repository, mailbox, runtime.notifier)

    for plural, reconciler in runtime.reconcilers.items():
        try:
            reconciler.informer.replace(reconciler.policies.list())
        except ResourceStoreError as e:
            # run() gives up on its own once the cache sync times out
            logger.error(f"Failed to list {plural}: {e}")

        thread = threading.Thread(
            target=reconciler.run,
            args=(settings.workers, runtime.stop_event),
            name=f"{reconciler.scope.name}-policy-controller",
            daemon=True,
        )
        thread.start()
        runtime.threads.append(thread)

    logger.info("Policy controller ready")


@kopf.on.cleanup()
def cleanup_handler(**_):
    """Stop the reconcilers and drain in-flight work"""
    logger.info("Policy controller shutting down")

    runtime.stop_event.set()
    for reconciler in runtime.reconcilers.values():
        reconciler.cleanup()
    for thread in runtime.threads:
        thread.join(timeout=5)
    if runtime.notifier:
        runtime.notifier.shutdown(wait=False)

    close_redis_connection()


# ============================================================================
# WATCH EVENTS
# ============================================================================


def dispatch_event(plural: str, event: Dict[str, Any]):
    reconciler = runtime.reconcilers.get(plural)
    if reconciler is None:
        logger.debug(f"Ignoring {plural} event received before startup")
        return
    reconciler.informer.on_event(event.get("type"), event["object"])


@kopf.on.event(CRD_GROUP, CRD_VERSION, VARMOR_POLICIES)
def varmor_policy_event(event: Dict[str, Any], **_):
    dispatch_event(VARMOR_POLICIES, event)


@kopf.on.event(CRD_GROUP, CRD_VERSION, VARMOR_CLUSTER_POLICIES)
def varmor_cluster_policy_event(event: Dict[str, Any], **_):
    dispatch_event(VARMOR_CLUSTER_POLICIES, event)


# ============================================================================
# PROBES
# ============================================================================


@kopf.on.probe(id="health")
def health_probe(**_):
    """Health check probe"""
    informers = {
        reconciler.scope.kind: reconciler.informer.has_synced()
        for reconciler in runtime.reconcilers.values()
    }
    try:
        get_redis_client().ping()
    except RedisError as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "error": str(e), "informers": informers}

    status = "healthy" if informers and all(informers.values()) else "starting"
    return {"status": status, "informers": informers}


# ============================================================================
# MAIN
# ============================================================================


def main():
    settings = get_settings()
    setup_logging(settings)
    kopf.run(clusterwide=True, liveness_endpoint=settings.liveness_endpoint)


if __name__ == "__main__":
    main()
