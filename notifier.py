"""
Store change notification and the cross-process change feed
"""

import os
import threading
from typing import Callable, List

from models import ChangeEvent
from logger import logger


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Fans out store-level change events to supervisor and UI listeners"""

    def __init__(self):
        self._supervisor_listeners: List[Listener] = []
        self._ui_listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._local = threading.local()
        self.last_revision = 0

    def subscribe(self, listener: Listener, supervisor: bool = False) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it"""
        if not callable(listener):
            raise TypeError("listener must be callable")

        with self._lock:
            target = self._supervisor_listeners if supervisor else self._ui_listeners
            target.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in target:
                    target.remove(listener)

        return unsubscribe

    def in_ui_dispatch(self) -> bool:
        """True while this thread is running UI listeners"""
        return getattr(self._local, "ui_depth", 0) > 0

    def notify(self, event: ChangeEvent) -> bool:
        """
        Dispatch an event unless its revision was already dispatched.

        Supervisor listeners run first and any exception they raise propagates
        to the caller before UI listeners run. RoutingSupervisor handles its own
        apply failures, so a committed write is never reported as failed. UI
        listeners run afterwards; their failures are logged and do not stop
        the remaining listeners.
        """
        with self._lock:
            if event.revision <= self.last_revision:
                logger.debug(f"Skipping already dispatched revision {event.revision}")
                return False
            self.last_revision = event.revision
            supervisor_listeners = list(self._supervisor_listeners)
            ui_listeners = list(self._ui_listeners)

        logger.debug(f"Dispatching change at revision {event.revision}",
                     source=event.source,
                     store_operation=event.operation)

        for listener in supervisor_listeners:
            listener(event)

        self._local.ui_depth = getattr(self._local, "ui_depth", 0) + 1
        try:
            for listener in ui_listeners:
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"UI listener failed: {e}", revision=event.revision)
        finally:
            self._local.ui_depth -= 1

        return True

    def reset(self, revision: int = 0):
        with self._lock:
            self.last_revision = revision


class StoreWatcher:
    """Polls the persisted document and feeds foreign writes into a notifier"""

    def __init__(self, database, notifier: ChangeNotifier, poll_interval: float = None):
        self.database = database
        self.notifier = notifier
        self.poll_interval = poll_interval or float(os.getenv('STORE_POLL_INTERVAL', '1.0'))
        self.shutdown_event = threading.Event()

        self._validate_configuration()

    def _validate_configuration(self):
        if self.poll_interval < 0.05 or self.poll_interval > 60:
            raise ValueError(f"STORE_POLL_INTERVAL must be between 0.05 and 60 seconds, got {self.poll_interval}")

    def poll_once(self) -> bool:
        """Check the store once; True if a change was dispatched"""
        revision = self.database.read_revision()
        if revision is None or revision <= self.notifier.last_revision:
            return False
        return self.notifier.notify(ChangeEvent(revision=revision, source="store-feed"))

    def watch(self):
        """Poll until stopped"""
        logger.info(f"Watching store for changes every {self.poll_interval}s")
        while not self.shutdown_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Store watcher error: {e}")
            if self.shutdown_event.wait(self.poll_interval):
                break

    def stop(self):
        self.shutdown_event.set()
