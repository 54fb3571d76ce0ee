"""Policy reconciliation package."""

from .informer import PolicyInformer
from .queue import RateLimitingQueue
from .reconciler import MAX_RETRIES, PolicyReconciler
from .scope import ClusterScope, NamespaceScope, PolicyScope

__all__ = [
    "PolicyReconciler",
    "PolicyInformer",
    "RateLimitingQueue",
    "PolicyScope",
    "NamespaceScope",
    "ClusterScope",
    "MAX_RETRIES",
]
