"""Repositories package for Kubernetes resource access."""

from .kubernetes import CustomResourceStore, VarmorRepository, load_kube_config

__all__ = [
    "CustomResourceStore",
    "VarmorRepository",
    "load_kube_config",
]
