"""Collaborators the reconcilers hand work to."""

from .profile import ProfileCompiler, generate_armor_profile_name
from .status_manager import RedisStatusMailbox, StatusMailbox, StatusMessage
from .workloads import WorkloadNotifier

__all__ = [
    # Profiles
    "ProfileCompiler",
    "generate_armor_profile_name",
    # Status manager
    "StatusMailbox",
    "StatusMessage",
    "RedisStatusMailbox",
    # Workloads
    "WorkloadNotifier",
]
