"""Turns policy notifications into work queue keys."""

from typing import Any, Dict

from varmor.controller.informer import EventHandler
from varmor.controller.queue import WorkQueue
from varmor.core.logging import get_logger_with_context
from varmor.models.policy import object_key, resource_version, spec_of, status_of


def should_enqueue_update(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
    """Whether an update notification needs a sync.

    Resyncs (same resourceVersion), metadata-only changes (same spec) and
    status writes (changed status, including the controller's own) are
    skipped.
    """
    if resource_version(new) == resource_version(old):
        return False
    if spec_of(new) == spec_of(old):
        return False
    if status_of(new) != status_of(old):
        return False
    return True


class EventRouter:
    def __init__(self, queue: WorkQueue, scope_name: str):
        self.queue = queue
        self.logger = get_logger_with_context(__name__, scope=scope_name)

    def enqueue(self, obj: Dict[str, Any]):
        key = object_key(obj)
        if not key:
            self.logger.error("Cannot build a queue key: object has no name")
            return
        self.queue.add(key)

    def on_add(self, obj: Dict[str, Any]):
        self.logger.debug(f"enqueue {object_key(obj)} (add)")
        self.enqueue(obj)

    def on_update(self, old: Dict[str, Any], new: Dict[str, Any]):
        if not should_enqueue_update(old, new):
            self.logger.debug(f"nothing needs to be updated for {object_key(new)}")
            return
        self.logger.debug(f"enqueue {object_key(new)} (update)")
        self.enqueue(new)

    def on_delete(self, obj: Dict[str, Any]):
        self.logger.debug(f"enqueue {object_key(obj)} (delete)")
        self.enqueue(obj)

    def handler(self) -> EventHandler:
        return EventHandler(self.on_add, self.on_update, self.on_delete)
