from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from config import WATCH_MODE

logger = logging.getLogger(__name__)

# opened/closed events fire while hashing and must not invalidate
INVALIDATING_EVENTS = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED})

ChangeCallback = Callable[[], None]


class PackWatcher(Protocol):
    def watch(
        self, directory: Path, on_change: ChangeCallback, on_gone: Optional[ChangeCallback] = None
    ) -> Optional[object]: ...

    def unwatch(self, handle: object) -> None: ...

    def close(self) -> None: ...


class _InvalidateOnChange(FileSystemEventHandler):
    def __init__(self, directory: Path, on_change: ChangeCallback, on_gone: Optional[ChangeCallback] = None):
        super().__init__()
        self._directory = os.path.normpath(str(directory))
        self._on_change = on_change
        self._on_gone = on_gone

    def _root_gone(self, event) -> bool:
        # a deleted or moved-away root leaves the watch on a dead inode
        if event.event_type in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
            if os.path.normpath(os.fsdecode(event.src_path)) == self._directory:
                return True
        return not os.path.isdir(self._directory)

    def dispatch(self, event):
        gone = False
        try:
            relevant = event.event_type in INVALIDATING_EVENTS
            gone = relevant and self._root_gone(event)
        except Exception as e:
            logger.debug(f"Watch event error, invalidating: {e}")
            relevant = True
        if relevant:
            self._on_change()
        if gone and self._on_gone is not None:
            logger.debug(f"Watched directory {self._directory} went away")
            self._on_gone()


class NullPackWatcher:
    """Watching disabled; the cache falls back to time-based expiry."""

    def watch(
        self, directory: Path, on_change: ChangeCallback, on_gone: Optional[ChangeCallback] = None
    ) -> Optional[object]:
        return None

    def unwatch(self, handle: object) -> None:
        pass

    def close(self) -> None:
        pass


class WatchdogPackWatcher:
    """Recursive directory watches on top of a shared watchdog observer.

    The native observer is used unless ``polling`` is set; if it cannot start
    or cannot schedule a directory, that watch moves to a polling observer.
    """

    def __init__(self, polling: bool = False, polling_interval: float = 1.0):
        self._polling = polling
        self._polling_interval = polling_interval
        self._lock = threading.Lock()
        self._observers: dict[str, object] = {}
        self._owners: dict[int, object] = {}

    def _observer(self, kind: str):
        observer = self._observers.get(kind)
        if observer is None:
            if kind == "polling":
                observer = PollingObserver(timeout=self._polling_interval)
            else:
                observer = Observer()
            observer.daemon = True
            observer.start()
            self._observers[kind] = observer
        return observer

    def watch(
        self, directory: Path, on_change: ChangeCallback, on_gone: Optional[ChangeCallback] = None
    ) -> Optional[object]:
        """Watch ``directory`` recursively.

        ``on_change`` runs on every create, modify, delete or move below it.
        ``on_gone`` runs once the directory itself is deleted or moved away;
        the watch is dead after that and the caller should schedule a new one.
        """
        handler = _InvalidateOnChange(directory, on_change, on_gone)
        kinds = ["polling"] if self._polling else ["native", "polling"]
        with self._lock:
            for kind in kinds:
                try:
                    observer = self._observer(kind)
                    handle = observer.schedule(handler, str(directory), recursive=True)
                except Exception as e:
                    logger.debug(f"{kind} watch on {directory} failed: {e}")
                    continue
                self._owners[id(handle)] = observer
                return handle
        logger.debug(f"No watch for {directory}; relying on expiry")
        return None

    def unwatch(self, handle: object) -> None:
        if handle is None:
            return
        with self._lock:
            observer = self._owners.pop(id(handle), None)
        if observer is None:
            return
        try:
            observer.unschedule(handle)
        except Exception as e:
            logger.debug(f"Unschedule failed: {e}")

    def close(self) -> None:
        with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()
            self._owners.clear()
        for observer in observers:
            try:
                observer.stop()
                observer.join(timeout=5)
            except Exception as e:
                logger.debug(f"Stopping watcher failed: {e}")


def create_pack_watcher(mode: Optional[str] = None):
    mode = (mode or WATCH_MODE).lower()
    if mode == "off":
        return NullPackWatcher()
    return WatchdogPackWatcher(polling=(mode == "polling"))
