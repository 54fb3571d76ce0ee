"""Rolling restarts of target workloads.

When a profile is created or removed, the pod templates of the workloads it
targets are annotated so that Kubernetes rolls them and the new pods pick up
(or drop) the profile. This runs on the notifier's own thread pool; the
reconcilers submit work and never look at the outcome.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client import ApiException

from varmor.core import metrics
from varmor.core.logging import get_logger

logger = get_logger(__name__)

RESTARTED_AT_ANNOTATION = "controller.varmor.org/restartedAt"
PROFILE_ANNOTATION = "controller.varmor.org/profile"
MODELING_ID_ANNOTATION = "controller.varmor.org/modeling-id"
APPARMOR_ANNOTATION_PREFIX = "container.apparmor.security.beta.kubernetes.io/"
BPF_ANNOTATION_PREFIX = "container.bpf.security.beta.varmor.org/"

RESTARTABLE_KINDS = ("Deployment", "StatefulSet", "DaemonSet")


def label_selector_string(selector: Dict[str, Any]) -> str:
    """Render a LabelSelector object in the string form list calls accept."""
    parts = [f"{k}={v}" for k, v in sorted((selector.get("matchLabels") or {}).items())]

    for expr in selector.get("matchExpressions") or []:
        key = expr["key"]
        operator = expr["operator"]
        values = ",".join(expr.get("values") or [])
        if operator == "In":
            parts.append(f"{key} in ({values})")
        elif operator == "NotIn":
            parts.append(f"{key} notin ({values})")
        elif operator == "Exists":
            parts.append(key)
        elif operator == "DoesNotExist":
            parts.append(f"!{key}")
        else:
            raise ValueError(f"unsupported selector operator {operator!r}")

    return ",".join(parts)


def build_template_annotations(
    enforcer: str,
    containers: List[str],
    profile_name: str,
    unique_id: str,
    bpf_exclusive_mode: bool,
) -> Dict[str, Optional[str]]:
    """Annotations to merge into a pod template; ``None`` removes a key."""
    annotations: Dict[str, Optional[str]] = {
        RESTARTED_AT_ANNOTATION: datetime.now(timezone.utc).isoformat(),
        PROFILE_ANNOTATION: profile_name or None,
        MODELING_ID_ANNOTATION: unique_id or None,
    }

    for container in containers:
        apparmor_value = None
        bpf_value = None
        if profile_name:
            if "AppArmor" in enforcer:
                apparmor_value = f"localhost/{profile_name}"
            elif "BPF" in enforcer and bpf_exclusive_mode:
                apparmor_value = "unconfined"
            if "BPF" in enforcer:
                bpf_value = f"localhost/{profile_name}"
        annotations[APPARMOR_ANNOTATION_PREFIX + container] = apparmor_value
        annotations[BPF_ANNOTATION_PREFIX + container] = bpf_value

    return annotations


class WorkloadNotifier:
    """Annotates target workloads on a private thread pool."""

    def __init__(self, apps_api: client.AppsV1Api, max_workers: int = 4):
        self.apps = apps_api
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="workload-notifier"
        )

    def notify(
        self,
        namespace: str,
        enforcer: str,
        target: Dict[str, Any],
        profile_name: str,
        unique_id: str,
        bpf_exclusive_mode: bool,
    ) -> Future:
        """Queue an annotation update for the workloads matching ``target``.

        An empty ``namespace`` means all namespaces; an empty ``profile_name``
        removes the annotations.
        """
        return self.executor.submit(
            self._update_workloads,
            namespace,
            enforcer,
            dict(target),
            profile_name,
            unique_id,
            bpf_exclusive_mode,
        )

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)

    def _update_workloads(
        self,
        namespace: str,
        enforcer: str,
        target: Dict[str, Any],
        profile_name: str,
        unique_id: str,
        bpf_exclusive_mode: bool,
    ) -> int:
        kind = target.get("kind", "")
        if kind not in RESTARTABLE_KINDS:
            logger.info(f"Target kind {kind!r} cannot be restarted, skipping")
            return 0

        updated = 0
        try:
            for ns, name, containers in self._find_workloads(kind, namespace, target):
                wanted = target.get("containers") or containers
                body = {
                    "spec": {
                        "template": {
                            "metadata": {
                                "annotations": build_template_annotations(
                                    enforcer,
                                    wanted,
                                    profile_name,
                                    unique_id,
                                    bpf_exclusive_mode,
                                )
                            }
                        }
                    }
                }
                self._patcher(kind)(name=name, namespace=ns, body=body)
                updated += 1
                logger.info(f"Annotated {kind} {ns}/{name} (profile={profile_name or '-'})")
        except (ApiException, ValueError) as e:
            metrics.workload_updates.labels(result="error").inc()
            logger.error(f"Failed to update {kind} workloads for target {target}: {e}")
            return updated
        except Exception as e:
            # Nobody waits on the future, so this is the only place it is seen
            metrics.workload_updates.labels(result="error").inc()
            logger.error(
                f"Unexpected error updating {kind} workloads for target {target}: {e}",
                exc_info=True,
            )
            return updated

        metrics.workload_updates.labels(result="success").inc(updated)
        return updated

    def _find_workloads(
        self, kind: str, namespace: str, target: Dict[str, Any]
    ) -> List[Tuple[str, str, List[str]]]:
        kwargs = {}
        if target.get("name"):
            kwargs["field_selector"] = f"metadata.name={target['name']}"
        elif target.get("selector"):
            kwargs["label_selector"] = label_selector_string(target["selector"])

        if namespace:
            items = self._lister(kind, namespaced=True)(namespace, **kwargs).items
        else:
            items = self._lister(kind, namespaced=False)(**kwargs).items

        workloads = []
        for item in items:
            containers = [c.name for c in item.spec.template.spec.containers]
            workloads.append((item.metadata.namespace, item.metadata.name, containers))
        return workloads

    def _lister(self, kind: str, namespaced: bool) -> Callable:
        if kind == "Deployment":
            return (
                self.apps.list_namespaced_deployment
                if namespaced
                else self.apps.list_deployment_for_all_namespaces
            )
        if kind == "StatefulSet":
            return (
                self.apps.list_namespaced_stateful_set
                if namespaced
                else self.apps.list_stateful_set_for_all_namespaces
            )
        return (
            self.apps.list_namespaced_daemon_set
            if namespaced
            else self.apps.list_daemon_set_for_all_namespaces
        )

    def _patcher(self, kind: str) -> Callable:
        return {
            "Deployment": self.apps.patch_namespaced_deployment,
            "StatefulSet": self.apps.patch_namespaced_stateful_set,
            "DaemonSet": self.apps.patch_namespaced_daemon_set,
        }[kind]
