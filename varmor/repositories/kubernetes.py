"""Resource store for vArmor custom resources backed by the Kubernetes API."""

import functools
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from varmor.core.errors import ConflictError, NotFoundError, ResourceStoreError
from varmor.core.logging import get_logger
from varmor.models.policy import name_of, namespace_of

logger = get_logger(__name__)

CRD_GROUP = "crd.varmor.org"
CRD_VERSION = "v1beta1"

VARMOR_POLICIES = "varmorpolicies"
VARMOR_CLUSTER_POLICIES = "varmorclusterpolicies"
ARMOR_PROFILES = "armorprofiles"
ARMOR_PROFILE_MODELS = "armorprofilemodels"


def load_kube_config() -> client.ApiClient:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")

    return client.ApiClient()


def _translate_api_errors(func):
    """Map ApiException onto the controller's store errors."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except ApiException as e:
            message = f"{func.__name__} {self.plural}: {e.status} {e.reason}"
            if e.status == 404:
                raise NotFoundError(message, status=404) from e
            if e.status == 409:
                raise ConflictError(message, status=409) from e
            raise ResourceStoreError(message, status=e.status) from e

    return wrapper


class CustomResourceStore:
    """get/list/create/update/update_status/delete for one custom resource kind.

    Namespaced kinds take the namespace from the body (writes) or from the
    ``namespace`` argument (reads); cluster kinds ignore it.
    """

    def __init__(
        self,
        api: client.CustomObjectsApi,
        plural: str,
        namespaced: bool = True,
        group: str = CRD_GROUP,
        version: str = CRD_VERSION,
    ):
        self.api = api
        self.plural = plural
        self.namespaced = namespaced
        self.group = group
        self.version = version

    def _args(self, namespace: str) -> Dict[str, str]:
        args = {"group": self.group, "version": self.version, "plural": self.plural}
        if self.namespaced:
            args["namespace"] = namespace
        return args

    @_translate_api_errors
    def get(self, name: str, namespace: str = "") -> Dict[str, Any]:
        if self.namespaced:
            return self.api.get_namespaced_custom_object(
                name=name, **self._args(namespace)
            )
        return self.api.get_cluster_custom_object(name=name, **self._args(namespace))

    @_translate_api_errors
    def list(self, namespace: str = "") -> List[Dict[str, Any]]:
        if self.namespaced and namespace:
            result = self.api.list_namespaced_custom_object(**self._args(namespace))
        else:
            result = self.api.list_cluster_custom_object(
                group=self.group, version=self.version, plural=self.plural
            )
        return result.get("items", [])

    @_translate_api_errors
    def create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespaced:
            return self.api.create_namespaced_custom_object(
                body=body, **self._args(namespace_of(body))
            )
        return self.api.create_cluster_custom_object(
            body=body, **self._args(namespace_of(body))
        )

    @_translate_api_errors
    def update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespaced:
            return self.api.replace_namespaced_custom_object(
                name=name_of(body), body=body, **self._args(namespace_of(body))
            )
        return self.api.replace_cluster_custom_object(
            name=name_of(body), body=body, **self._args(namespace_of(body))
        )

    @_translate_api_errors
    def update_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.namespaced:
            return self.api.replace_namespaced_custom_object_status(
                name=name_of(body), body=body, **self._args(namespace_of(body))
            )
        return self.api.replace_cluster_custom_object_status(
            name=name_of(body), body=body, **self._args(namespace_of(body))
        )

    @_translate_api_errors
    def delete(self, name: str, namespace: str = "") -> Optional[Dict[str, Any]]:
        if self.namespaced:
            return self.api.delete_namespaced_custom_object(
                name=name, **self._args(namespace)
            )
        return self.api.delete_cluster_custom_object(
            name=name, **self._args(namespace)
        )


class VarmorRepository:
    """Bundle of the stores the reconcilers need."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        api = client.CustomObjectsApi(api_client)
        self.policies = CustomResourceStore(api, VARMOR_POLICIES, namespaced=True)
        self.cluster_policies = CustomResourceStore(
            api, VARMOR_CLUSTER_POLICIES, namespaced=False
        )
        self.profiles = CustomResourceStore(api, ARMOR_PROFILES, namespaced=True)
        self.profile_models = CustomResourceStore(
            api, ARMOR_PROFILE_MODELS, namespaced=True
        )
