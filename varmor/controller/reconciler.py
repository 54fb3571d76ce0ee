"""
Policy reconciler.

Keeps one ArmorProfile per VarmorPolicy (or VarmorClusterPolicy). The same
reconciler serves both kinds; a ``PolicyScope`` supplies the differences.

Every sync starts from what is currently stored, never from the event that
triggered it:

    policy missing          -> handle_delete
    policy, profile missing -> handle_create
    both present            -> handle_update
"""

import copy
import threading
import time
from typing import Any, Dict, List, Optional

from varmor.controller.informer import PolicyInformer, wait_for_cache_sync
from varmor.controller.queue import RateLimiter, RateLimitingQueue
from varmor.controller.router import EventRouter
from varmor.controller.scope import PolicyScope
from varmor.controller.status import StatusReporter
from varmor.controller.validation import ValidationGate
from varmor.core import metrics
from varmor.core.errors import (
    NotFoundError,
    ProfileGenerationError,
    ResourceStoreError,
    handle_crash,
    handle_error,
)
from varmor.core.logging import LoggerAdapter, get_logger_with_context
from varmor.models.policy import (
    REASON_ERROR,
    ConditionStatus,
    ConditionType,
    PolicyPhase,
    enforcer_of,
    is_modeling,
    modeling_duration,
    name_of,
    namespace_of,
    policy_section,
    profile_enforcer,
    profile_target,
    profile_unique_id,
    spec_of,
    split_key,
    target_of,
)
from varmor.repositories.kubernetes import CustomResourceStore
from varmor.services.profile import ProfileCompiler
from varmor.services.status_manager import StatusMailbox
from varmor.services.workloads import WorkloadNotifier

# Number of times a key is retried before it is dropped out of the queue
MAX_RETRIES = 5


class PolicyReconciler:
    def __init__(
        self,
        scope: PolicyScope,
        policies: CustomResourceStore,
        profiles: CustomResourceStore,
        profile_models: CustomResourceStore,
        informer: PolicyInformer,
        status_mailbox: StatusMailbox,
        workload_notifier: Optional[WorkloadNotifier] = None,
        compiler: Optional[ProfileCompiler] = None,
        restart_exist_workloads: bool = False,
        enable_defense_in_depth: bool = False,
        bpf_exclusive_mode: bool = False,
        cache_sync_timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.scope = scope
        self.policies = policies
        self.profiles = profiles
        self.profile_models = profile_models
        self.informer = informer
        self.status_mailbox = status_mailbox
        self.workload_notifier = workload_notifier
        self.compiler = compiler or ProfileCompiler()
        self.restart_exist_workloads = restart_exist_workloads
        self.enable_defense_in_depth = enable_defense_in_depth
        self.bpf_exclusive_mode = bpf_exclusive_mode
        self.cache_sync_timeout = cache_sync_timeout

        self.queue = RateLimitingQueue(scope.queue_name, rate_limiter)
        self.reporter = StatusReporter(policies)
        self.gate = ValidationGate(scope, self.reporter, enable_defense_in_depth)
        self.router = EventRouter(self.queue, scope.name)
        self.logger = get_logger_with_context(__name__, scope=scope.name)
        self._workers: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_policy(self, key: str):
        """Bring the profile for ``key`` in line with its policy.

        Returns normally when nothing more can be done (including rejected
        policies); raises when the key should be retried.
        """
        logger = self.logger.with_context(key=key)
        start = time.monotonic()
        logger.debug("started syncing policy")

        try:
            with metrics.sync_duration.labels(scope=self.scope.name).time():
                self._sync(key, logger)
        finally:
            logger.debug(
                f"finished syncing policy in {time.monotonic() - start:.3f}s"
            )

    def _sync(self, key: str, logger: LoggerAdapter):
        namespace, name = split_key(key)

        try:
            policy = self.policies.get(name, namespace)
        except NotFoundError:
            logger.debug(f"processing {self.scope.kind} delete event")
            return self.handle_delete(namespace, name)

        profile_name = self.scope.profile_name(namespace, name)
        try:
            profile = self.profiles.get(
                profile_name, self.scope.profile_namespace(namespace)
            )
        except NotFoundError:
            logger.debug(f"processing {self.scope.kind} create event")
            return self.handle_create(policy)

        logger.debug(f"processing {self.scope.kind} update event")
        return self.handle_update(policy, profile)

    def handle_delete(self, namespace: str, name: str):
        logger = self.logger.with_context(
            handler="handle_delete", namespace=namespace, name=name
        )
        logger.info(f"{self.scope.kind} deleted")

        profile_name = self.scope.profile_name(namespace, name)
        profile_namespace = self.scope.profile_namespace(namespace)

        logger.info("retrieve ArmorProfile")
        try:
            profile = self.profiles.get(profile_name, profile_namespace)
        except NotFoundError:
            return

        logger.info("delete ArmorProfile")
        try:
            self.profiles.delete(profile_name, profile_namespace)
        except NotFoundError:
            logger.info("ArmorProfile already deleted")

        if self.restart_exist_workloads and self.workload_notifier:
            # Rolls the target workloads without the profile
            logger.info("delete annotations of target workloads asynchronously")
            self.workload_notifier.notify(
                self.scope.workload_namespace(namespace),
                profile_enforcer(profile),
                profile_target(profile),
                "",
                "",
                False,
            )

        logger.info("cleanup the policy status (and if any modeling status) of the status manager")
        self.status_mailbox.delete(self.scope.status_key(namespace, name))

    def handle_create(self, policy: Dict[str, Any]):
        namespace, name = namespace_of(policy), name_of(policy)
        logger = self.logger.with_context(
            handler="handle_create", namespace=namespace, name=name
        )
        logger.info(f"{self.scope.kind} created, target: {target_of(policy)}")

        if self.gate.ignore_add(policy, logger):
            return

        profile_name = self.scope.profile_name(namespace, name)
        profile_namespace = self.scope.profile_namespace(namespace)
        try:
            profile = self.compiler.new_armor_profile(
                policy, profile_name, profile_namespace
            )
        except ProfileGenerationError as e:
            logger.error(f"new_armor_profile() failed: {e}")
            self.report_generation_error(policy, e)
            return

        logger.info(f"update {self.scope.kind}/status (created=true)")
        self.reporter.update_policy_status(
            policy,
            profile["spec"]["profile"]["name"],
            True,
            PolicyPhase.PENDING,
            ConditionType.CREATED,
            ConditionStatus.TRUE,
        )

        if is_modeling(policy) and self.scope.supports_modeling(self.enable_defense_in_depth):
            self.reset_profile_model_status(profile_namespace, profile_name, logger)

        self.status_mailbox.update_desired_number()

        logger.info("create ArmorProfile")
        profile = self.profiles.create(profile)

        if self.restart_exist_workloads and self.workload_notifier:
            # Rolls the target workloads so new pods load the profile
            logger.info("add annotations to target workloads asynchronously")
            self.workload_notifier.notify(
                self.scope.workload_namespace(namespace),
                enforcer_of(policy),
                target_of(policy),
                name_of(profile),
                profile_unique_id(profile),
                self.bpf_exclusive_mode,
            )

    def handle_update(self, policy: Dict[str, Any], profile: Dict[str, Any]):
        namespace, name = namespace_of(policy), name_of(policy)
        logger = self.logger.with_context(
            handler="handle_update", namespace=namespace, name=name
        )
        logger.info(f"{self.scope.kind} updated, target: {target_of(policy)}")

        try:
            if self.gate.ignore_update(policy, profile, logger):
                return
        except ProfileGenerationError as e:
            logger.error(f"ignore_update() failed: {e}")
            self.report_generation_error(policy, e)
            return

        logger.info(f"1. reset {self.scope.kind}/status (updated=true)")
        self.reporter.update_policy_status(
            policy,
            "",
            True,
            PolicyPhase.PENDING,
            ConditionType.UPDATED,
            ConditionStatus.TRUE,
        )

        # Keep everything but the compiled profile from the existing spec
        new_spec = copy.deepcopy(spec_of(profile))
        try:
            new_spec["profile"] = self.compiler.generate_profile(
                policy_section(policy), new_spec["profile"]["name"], False
            )
        except ProfileGenerationError as e:
            logger.error(f"generate_profile() failed: {e}")
            self.report_generation_error(policy, e)
            return

        if is_modeling(policy):
            new_spec.setdefault("behaviorModeling", {})["modelingDuration"] = modeling_duration(policy)

        status_key = self.scope.status_key(namespace, name)
        self.status_mailbox.update_desired_number()

        if spec_of(profile) == new_spec:
            logger.info("2. update the object's status only")
            self.status_mailbox.update_status(status_key)
            return

        logger.info("2. update the object and its status")

        logger.info("2.1. reset ArmorProfile/status and ArmorProfileModel/status")
        profile = copy.deepcopy(profile)
        profile_status = profile.setdefault("status", {})
        profile_status["currentNumberLoaded"] = 0
        profile_status.pop("conditions", None)
        profile = self.profiles.update_status(profile)

        if is_modeling(policy):
            self.reset_profile_model_status(namespace_of(profile), name_of(profile), logger)

        logger.info(f"2.2. reset the status cache, status key: {status_key}")
        self.status_mailbox.reset(status_key)

        logger.info("2.3. update ArmorProfile")
        profile["spec"] = new_spec
        self.profiles.update(profile)

    def report_generation_error(self, policy: Dict[str, Any], err: ProfileGenerationError):
        """Move a policy whose profile cannot be built into the Error phase."""
        self.reporter.update_policy_status(
            policy,
            "",
            True,
            PolicyPhase.ERROR,
            ConditionType.CREATED,
            ConditionStatus.FALSE,
            REASON_ERROR,
            str(err),
        )

    def reset_profile_model_status(self, namespace: str, name: str, logger: LoggerAdapter):
        """Clear the completion state of the behavior model behind a profile.

        Best effort: failures are logged and do not fail the sync.
        """
        try:
            model = self.profile_models.get(name, namespace)
        except NotFoundError:
            return
        except ResourceStoreError as e:
            logger.error(f"failed to retrieve ArmorProfileModel {namespace}/{name}: {e}")
            return

        model_status = model.setdefault("status", {})
        model_status["completedNumber"] = 0
        model_status["ready"] = False
        model_status.pop("conditions", None)
        try:
            self.profile_models.update_status(model)
        except ResourceStoreError as e:
            logger.error(f"reset_profile_model_status() failed: {e}")

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def handle_err(self, err: Optional[BaseException], key: str):
        if err is None:
            self.queue.forget(key)
            metrics.sync_results.labels(scope=self.scope.name, result="success").inc()
            return

        metrics.sync_results.labels(scope=self.scope.name, result="error").inc()
        if self.queue.num_requeues(key) < MAX_RETRIES:
            self.logger.error(f"failed to sync policy {key}: {err}")
            self.queue.add_rate_limited(key)
            return

        handle_error(err, key, self.scope.name)
        self.logger.info(f"dropping policy {key} out of the queue")
        self.queue.forget(key)

    def process_next_work_item(self) -> bool:
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            err = None
            try:
                self.sync_policy(key)
            except Exception as e:
                err = e
            self.handle_err(err, key)
        finally:
            self.queue.done(key)

        return True

    def worker(self):
        while self.process_next_work_item():
            pass

    def _run_worker(self, stop_event: threading.Event):
        # Restart the worker after a crash until the queue shuts down
        while not stop_event.is_set() and not self.queue.shutting_down():
            try:
                self.worker()
            except Exception as e:
                handle_crash(e, f"{self.scope.name} policy worker")
            if self.queue.shutting_down():
                return
            stop_event.wait(1.0)

    def run(self, workers: int, stop_event: threading.Event):
        """Start ``workers`` sync threads and block until ``stop_event`` is set.

        Returns without starting anything if the informer cache does not
        sync first.
        """
        self.logger.info("starting")

        if not wait_for_cache_sync(
            stop_event, self.informer.has_synced, timeout=self.cache_sync_timeout
        ):
            self.logger.error(f"failed to sync {self.scope.kind} informer cache")
            return

        self.informer.add_event_handler(self.router.handler())

        for i in range(workers):
            thread = threading.Thread(
                target=self._run_worker,
                args=(stop_event,),
                name=f"{self.scope.queue_name}-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._workers.append(thread)

        stop_event.wait()

    def cleanup(self, timeout: Optional[float] = 30.0):
        """Shut the queue down and wait for in-flight syncs to finish."""
        self.logger.info("cleaning up")
        self.queue.shutdown()
        for thread in self._workers:
            thread.join(timeout)
