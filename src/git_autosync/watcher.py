"""Filesystem change notification feeding the daemon's event queue.

A watchdog `Observer` watches every repository root recursively on its own
threads. Raw events are debounced per path (trailing edge) and then handed to
the single consumer through a blocking `queue.Queue`.
"""

import logging
import os
import queue
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .constants import APP_NAME
from .errors import NotifierError

logger = logging.getLogger(APP_NAME)


class ChangeKind(Enum):
    """Kinds of filesystem change."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True)
class ChangeEvent:
    """A single change to a path, consumed once by the daemon loop."""

    path: str
    kind: ChangeKind


def _decode(path: str | bytes) -> str:
    return os.fsdecode(path)


class DebouncedEventHandler(FileSystemEventHandler):
    """Turns watchdog events into debounced `ChangeEvent`s on a queue.

    Each new event for a path restarts that path's timer; only the latest
    event is delivered once the path has been quiet for `debounce` seconds.
    """

    def __init__(self, events: "queue.Queue[ChangeEvent | None]", debounce: float = 1.0):
        super().__init__()
        self.events = events
        self.debounce = debounce
        self._pending: dict[str, ChangeEvent] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(ChangeEvent(_decode(event.src_path), ChangeKind.CREATED))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(ChangeEvent(_decode(event.src_path), ChangeKind.MODIFIED))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(ChangeEvent(_decode(event.src_path), ChangeKind.REMOVED))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(ChangeEvent(_decode(event.dest_path), ChangeKind.RENAMED))

    def schedule(self, event: ChangeEvent) -> None:
        """Queues an event after the debounce window, superseding earlier ones."""
        if self.debounce <= 0:
            self.events.put(event)
            return

        with self._lock:
            if timer := self._timers.get(event.path):
                timer.cancel()
            self._pending[event.path] = event
            timer = threading.Timer(self.debounce, self._fire, args=(event.path,))
            timer.daemon = True
            self._timers[event.path] = timer
            timer.start()

    def _fire(self, path: str) -> None:
        with self._lock:
            event = self._pending.pop(path, None)
            self._timers.pop(path, None)
        if event is not None:
            self.events.put(event)

    def cancel(self) -> None:
        """Drops all pending events."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending.clear()


class ChangeNotifier:
    """Watches repository roots and delivers `ChangeEvent`s to a queue.

    Usable as a context manager: the observer starts on entry and is stopped
    and joined on exit.
    """

    def __init__(
        self,
        roots: Iterable[Path],
        events: "queue.Queue[ChangeEvent | None] | None" = None,
        debounce: float = 1.0,
    ):
        self.roots = list(roots)
        self.events: "queue.Queue[ChangeEvent | None]" = (
            events if events is not None else queue.Queue()
        )
        self.handler = DebouncedEventHandler(self.events, debounce)
        self.observer = Observer()

    def start(self) -> None:
        """Schedules a recursive watch per root and starts the observer.

        Raises:
            NotifierError: If a watch cannot be added or the observer fails to start.
        """
        try:
            for root in self.roots:
                self.observer.schedule(self.handler, str(root), recursive=True)
                logger.info(f"WATCHING {root}")
            self.observer.start()
        except Exception as e:
            raise NotifierError(f"Cannot start file watcher: {e}") from e

    def stop(self) -> None:
        """Stops the observer and discards events still being debounced."""
        self.handler.cancel()
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join()

    def __enter__(self) -> "ChangeNotifier":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
