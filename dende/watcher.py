import logging
import os
import queue
import threading
from pathlib import Path
from typing import Callable, Optional, Tuple

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .errors import JobInitError, TailReadError
from .matcher import Matcher
from .tailer import FileTailer


logger = logging.getLogger("dende.watcher")

READ_FRESH = "read_fresh"
READ = "read"
EVICT = "evict"


def classify(event: FileSystemEvent, watch_name: Optional[str] = None) -> Optional[Tuple[str, str]]:
    """Map a watchdog event to (action, path), or None when it is ignored.

    watch_name restricts events to one file name (single-file jobs watch the
    parent directory).
    """
    if event.is_directory:
        return None
    typ = event.event_type
    if typ == EVENT_TYPE_MOVED:
        action, path = READ_FRESH, event.dest_path
    elif typ == EVENT_TYPE_CREATED:
        action, path = READ_FRESH, event.src_path
    elif typ == EVENT_TYPE_MODIFIED:
        action, path = READ, event.src_path
    elif typ == EVENT_TYPE_DELETED:
        action, path = EVICT, event.src_path
    else:
        return None
    path = os.fsdecode(path)
    if watch_name is not None and os.path.basename(path) != watch_name:
        return None
    return action, path


class _QueueHandler(FileSystemEventHandler):
    """Forward watchdog events from the observer thread into a queue."""

    def __init__(self, events: "queue.Queue[FileSystemEvent]"):
        self.events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        self.events.put(event)


class FileJob:
    """One file/directory watch job, run on its own thread.

    Initial scan, then a loop over filesystem events with a bounded wait so the
    loop can notice stop().
    """

    def __init__(
        self,
        idx: int,
        target: str,
        matcher: Matcher,
        notifier,
        recursive: bool = False,
        read_existing: bool = True,
        poll_timeout: float = 1.0,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.idx = idx
        self.target = Path(os.path.abspath(target))
        self.recursive = recursive
        self.read_existing = read_existing
        self.poll_timeout = poll_timeout
        self.tailer = FileTailer(matcher, notifier)
        self._observer_factory = observer_factory
        self._observer = None
        self._events: "queue.Queue[FileSystemEvent]" = queue.Queue()
        self._stop = threading.Event()
        self._watch_name: Optional[str] = None
        self.ready = threading.Event()
        self.failed: Optional[JobInitError] = None

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.run, name=f"watcher-{self.idx}", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        try:
            self.tailer.initialize(self.target, self.recursive, self.read_existing)
            self.subscribe()
        except JobInitError as e:
            logger.error("[job %d] init error: %s", self.idx, e)
            self.failed = e
            self.ready.set()
            return
        self.ready.set()
        try:
            while not self._stop.is_set():
                try:
                    event = self._events.get(timeout=self.poll_timeout)
                except queue.Empty:
                    continue
                self.handle(event)
        finally:
            self.unsubscribe()

    def subscribe(self) -> None:
        if self.target.is_file():
            root = self.target.parent
            self._watch_name = self.target.name
            recursive = False
        else:
            root = self.target
            self._watch_name = None
            recursive = self.recursive
        observer = self._observer_factory()
        try:
            observer.schedule(_QueueHandler(self._events), str(root), recursive=recursive)
            observer.start()
        except OSError as e:
            raise JobInitError(f"watch error on {root}: {e}") from e
        self._observer = observer
        logger.debug("[job %d] watching %s (recursive=%s, file=%s)", self.idx, root, recursive, self._watch_name)

    def unsubscribe(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer = None

    def handle(self, event: FileSystemEvent) -> None:
        action = classify(event, self._watch_name)
        if action is None:
            return
        kind, path = action
        if kind == EVICT:
            logger.debug("[job %d] forgetting %s", self.idx, path)
            self.tailer.forget(path)
            return
        try:
            self.tailer.read_from(path, from_scratch=(kind == READ_FRESH))
        except TailReadError as e:
            logger.error("[job %d] FS read error: %s", self.idx, e)
