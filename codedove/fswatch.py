"""Filesystem change notifications delivered onto the asyncio event loop.

All watches share one watchdog observer; it calls back on its own thread and
every event is handed to the loop with ``call_soon_threadsafe`` so consumers
only ever run on the loop thread and need no locks. A directory watched by
several consumers is scheduled once and unscheduled when the last one closes.
"""

import asyncio
import atexit
import os
import threading
from typing import Callable, Dict, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from .logs import log_message

ChangeCallback = Callable[[str], None]
PathFilter = Callable[[str], bool]

# Shared observer and per-(directory, recursive) reference counts
_observer: Optional[Observer] = None
_observer_lock = threading.Lock()
_watch_refs: Dict[Tuple[str, bool], Tuple[ObservedWatch, int]] = {}


def _shared_observer() -> Observer:
    """Caller holds ``_observer_lock``"""
    global _observer
    if _observer is None or not _observer.is_alive():
        _observer = Observer()
        _observer.start()
        _watch_refs.clear()
    return _observer


def _shutdown_observer() -> None:
    global _observer
    with _observer_lock:
        if _observer is not None:
            _observer.stop()
            _observer.join(timeout=1.0)
            _observer = None
        _watch_refs.clear()


atexit.register(_shutdown_observer)


def active_watch_count() -> int:
    """Number of directories currently scheduled on the shared observer"""
    with _observer_lock:
        return len(_watch_refs)


def _event_path(raw) -> str:
    """watchdog may report bytes paths"""
    return os.fsdecode(raw)


class _ChangeHandler(FileSystemEventHandler):
    """Forwards file changes and removals to the owning watch"""

    def __init__(self, watch: 'FileChangeWatch'):
        self._watch = watch

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._watch._post(_event_path(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._watch._post(_event_path(event.src_path))

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._watch._post(_event_path(event.src_path), deleted=True)
            self._watch._post(_event_path(event.dest_path))

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._watch._post(_event_path(event.src_path), deleted=True)


class FileChangeWatch:
    """Watch a directory and call ``on_change(path)`` on the event loop.

    ``on_delete(path)`` is called the same way for files removed or moved
    away. ``accept`` filters paths on the observer thread before anything is
    scheduled. ``close()`` is idempotent and takes effect immediately: a
    notification already queued on the loop is dropped when it runs.
    """

    def __init__(self, root: str, on_change: ChangeCallback, recursive: bool = False,
                 accept: Optional[PathFilter] = None, name: str = 'watch',
                 on_delete: Optional[ChangeCallback] = None):
        self.root = root
        self.on_change = on_change
        self.on_delete = on_delete
        self.recursive = recursive
        self.accept = accept
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handler: Optional[_ChangeHandler] = None
        self._watched: Optional[ObservedWatch] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def _key(self) -> Tuple[str, bool]:
        return (self.root, self.recursive)

    def start(self) -> bool:
        """Begin watching; returns False if the directory cannot be watched"""
        self._loop = asyncio.get_running_loop()
        if not os.path.isdir(self.root):
            log_message("WARNING", f"{self.name}: cannot watch {self.root}: not a directory")
            return False

        handler = _ChangeHandler(self)
        with _observer_lock:
            observer = _shared_observer()
            try:
                watch = observer.schedule(handler, self.root, recursive=self.recursive)
            except OSError as e:
                # schedule() registers the handler before the emitter fails to start
                try:
                    observer.remove_handler_for_watch(handler, ObservedWatch(self.root, recursive=self.recursive))
                except KeyError:
                    pass
                log_message("WARNING", f"{self.name}: cannot watch {self.root}: {e}")
                return False
            _, count = _watch_refs.get(self._key, (watch, 0))
            _watch_refs[self._key] = (watch, count + 1)

        self._handler = handler
        self._watched = watch
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._handler is None:
            return

        with _observer_lock:
            observer = _observer
            entry = _watch_refs.get(self._key)
            if observer is not None:
                try:
                    observer.remove_handler_for_watch(self._handler, self._watched)
                except KeyError:
                    pass
                if entry is not None:
                    watch, count = entry
                    if count > 1:
                        _watch_refs[self._key] = (watch, count - 1)
                    else:
                        del _watch_refs[self._key]
                        try:
                            observer.unschedule(watch)
                        except KeyError as e:
                            log_message("DEBUG", f"{self.name}: {self.root} already unscheduled: {e}")
        self._handler = None
        self._watched = None

    def trigger(self, path: str, deleted: bool = False) -> None:
        """Deliver a change for ``path`` as if the observer had reported it (loop thread only)"""
        if self.accept and not self.accept(path):
            return
        self._dispatch(path, deleted)

    def _post(self, path: str, deleted: bool = False) -> None:
        # Observer thread
        if self._closed or self._loop is None:
            return
        if deleted and self.on_delete is None:
            return
        if self.accept and not self.accept(path):
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, path, deleted)
        except RuntimeError:
            # Loop already closed
            pass

    def _dispatch(self, path: str, deleted: bool = False) -> None:
        if self._closed:
            return
        handler = self.on_delete if deleted else self.on_change
        if handler is None:
            return
        try:
            handler(path)
        except Exception as e:
            log_message("WARNING", f"{self.name}: change handler failed for {path}: {e}")
