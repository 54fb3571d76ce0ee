"""Read-only cache of policy objects fed by watch events."""

import copy
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from varmor.core.logging import get_logger
from varmor.models.policy import object_key

logger = get_logger(__name__)

DELETED = "DELETED"


class EventHandler:
    """Callbacks for add, update and delete notifications."""

    def __init__(
        self,
        on_add: Callable[[Dict[str, Any]], None],
        on_update: Callable[[Dict[str, Any], Dict[str, Any]], None],
        on_delete: Callable[[Dict[str, Any]], None],
    ):
        self.on_add = on_add
        self.on_update = on_update
        self.on_delete = on_delete


class PolicyInformer:
    """Keeps the last seen version of every policy and notifies handlers.

    The cache is seeded with ``replace()`` (a full list) and then kept
    current with ``on_event()``. Handlers registered after the initial sync
    receive an add notification for every cached object.
    """

    def __init__(self, name: str):
        self.name = name
        self._items: Dict[str, Dict[str, Any]] = {}
        self._handlers: List[EventHandler] = []
        self._lock = threading.RLock()
        self._synced = threading.Event()

    def add_event_handler(self, handler: EventHandler):
        with self._lock:
            self._handlers.append(handler)
            existing = list(self._items.values())

        for obj in existing:
            handler.on_add(obj)

    def replace(self, objects: Iterable[Dict[str, Any]]):
        """Replace the cache with a fresh list and mark it synced."""
        new_items = {object_key(obj): copy.deepcopy(obj) for obj in objects}

        with self._lock:
            old_items = self._items
            self._items = new_items
            handlers = list(self._handlers)

        for key, obj in new_items.items():
            old = old_items.get(key)
            for handler in handlers:
                if old is None:
                    handler.on_add(obj)
                else:
                    handler.on_update(old, obj)

        for key, old in old_items.items():
            if key not in new_items:
                for handler in handlers:
                    handler.on_delete(old)

        if not self._synced.is_set():
            logger.info(f"{self.name} informer synced with {len(new_items)} objects")
        self._synced.set()

    def on_event(self, event_type: Optional[str], obj: Dict[str, Any]):
        """Apply one watch event; ``None`` is an initial-listing event."""
        key = object_key(obj)
        obj = copy.deepcopy(obj)

        with self._lock:
            handlers = list(self._handlers)
            if event_type == DELETED:
                old = self._items.pop(key, None)
            else:
                old = self._items.get(key)
                self._items[key] = obj

        for handler in handlers:
            if event_type == DELETED:
                handler.on_delete(old or obj)
            elif old is None:
                handler.on_add(obj)
            else:
                handler.on_update(old, obj)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._items.get(key)
            return copy.deepcopy(obj) if obj is not None else None


def wait_for_cache_sync(
    stop_event: threading.Event,
    *synced: Callable[[], bool],
    timeout: Optional[float] = None,
    interval: float = 0.1,
) -> bool:
    """Poll until every ``synced`` callable returns True.

    Returns False if ``stop_event`` fires or ``timeout`` seconds pass first.
    """
    deadline = None if not timeout else time.monotonic() + timeout
    while not all(check() for check in synced):
        if deadline is not None and time.monotonic() >= deadline:
            return False
        if stop_event.wait(interval):
            return False
    return True
