"""Lifecycle events exposed to the rest of the application.

The realtime/broadcast layer subscribes to on_group_purged to tell
connected clients that a group is gone. Listeners run synchronously on the
worker thread that purged the group; a failing listener is logged and
never undoes or blocks the purge.
"""

import logging
import threading
from typing import Callable, List
from uuid import UUID

logger = logging.getLogger(__name__)

GroupPurgedListener = Callable[[UUID], None]


class LifecycleEvents:
    """Registry of group lifecycle listeners."""

    def __init__(self):
        self._lock = threading.Lock()
        self._purged_listeners: List[GroupPurgedListener] = []

    def on_group_purged(self, listener: GroupPurgedListener) -> GroupPurgedListener:
        """Register a listener; usable as a decorator.

        Example:
            @events.on_group_purged
            def broadcast(group_id):
                socket_hub.emit("group_deleted", str(group_id))
        """
        with self._lock:
            self._purged_listeners.append(listener)
        return listener

    def remove_listener(self, listener: GroupPurgedListener) -> None:
        with self._lock:
            if listener in self._purged_listeners:
                self._purged_listeners.remove(listener)

    def emit_group_purged(self, group_id: UUID) -> None:
        with self._lock:
            listeners = list(self._purged_listeners)

        for listener in listeners:
            try:
                listener(group_id)
            except Exception:
                logger.error(
                    f"group_purged listener {getattr(listener, '__name__', listener)} failed",
                    extra={"group_id": str(group_id)},
                    exc_info=True,
                )


# Application-wide registry used by the API process and Celery workers
lifecycle_events = LifecycleEvents()
