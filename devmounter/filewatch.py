"""Watch files and directories and run callbacks when they change."""

import os
import threading

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

_MODIFICATION_EVENTS = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}
)


class FileWatchError(Exception):
    """Raised when a watch cannot be configured or started."""


class _Handler(FileSystemEventHandler):
    def __init__(self, watch):
        super().__init__()
        self._watch = watch

    def on_any_event(self, event):
        self._watch._handle_event(event)


class FileWatch:
    """Runs registered callbacks when a path, or anything under it, changes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks = {}
        self._started = False
        self._active = False

    def add(self, path, callback):
        """Register a callback for a path; not allowed while running."""
        with self._lock:
            if self._started:
                raise FileWatchError("cannot add to a running watch")
            self._callbacks[path] = callback

    def is_running(self):
        """Whether events are currently being processed."""
        return self._active

    def run(self, done):
        """Process events until the ``done`` event is set."""
        with self._lock:
            self._started = True
        try:
            observer = Observer()
            try:
                observer.start()
            except OSError as err:
                raise FileWatchError(f"could not create watcher: {err}") from err
            try:
                self._schedule(observer)
                self._active = True
                while not done.wait(0.05):
                    if not observer.is_alive():
                        break
            finally:
                observer.stop()
                observer.join()
        finally:
            self._active = False
            self._started = False

    def _schedule(self, observer):
        handler = _Handler(self)
        scheduled = set()
        for path in self._callbacks:
            if not os.path.exists(path):
                raise FileWatchError(
                    f"could not add callbacks: failed watch {path}: no such file or directory"
                )
            absolute = os.path.abspath(path)
            target = absolute if os.path.isdir(absolute) else os.path.dirname(absolute)
            if target in scheduled:
                continue
            try:
                observer.schedule(handler, target, recursive=False)
            except OSError as err:
                raise FileWatchError(
                    f"could not add callbacks: failed watch {path}: {err}"
                ) from err
            scheduled.add(target)

    def _handle_event(self, event):
        if event.event_type not in _MODIFICATION_EVENTS:
            return
        raw = event.dest_path if event.event_type == EVENT_TYPE_MOVED else event.src_path
        name = os.path.abspath(os.fsdecode(raw))
        for path, callback in list(self._callbacks.items()):
            if name.startswith(os.path.abspath(path)):
                callback()