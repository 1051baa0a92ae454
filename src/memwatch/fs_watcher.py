"""File system watcher capability backed by the watchdog library."""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .exceptions import WatchSetupError
from .models import RawFSEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[RawFSEvent], None]
ErrorCallback = Callable[[Exception], None]

_DIRECTORY_EVENTS = (DirCreatedEvent, DirDeletedEvent, DirModifiedEvent, DirMovedEvent)


class FileSystemWatcher(ABC):
    """
    Minimal watcher capability.

    Handlers subscribed to a watcher receive RawFSEvents while the watcher
    is enabled; error handlers receive exceptions raised by the underlying
    mechanism. Nothing is delivered before ``enabled`` is set.
    """

    def __init__(self, path: Path, filter: str = "*.*", recursive: bool = True):
        self.path = Path(path)
        self.filter = filter
        self.recursive = recursive
        self._handlers: List[EventCallback] = []
        self._error_handlers: List[ErrorCallback] = []
        self._handlers_lock = threading.Lock()
        self._enabled = False

    def subscribe(self, handler: EventCallback, on_error: Optional[ErrorCallback] = None) -> None:
        with self._handlers_lock:
            self._handlers.append(handler)
            if on_error is not None:
                self._error_handlers.append(on_error)

    def unsubscribe(self, handler: EventCallback, on_error: Optional[ErrorCallback] = None) -> None:
        with self._handlers_lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
            if on_error is not None and on_error in self._error_handlers:
                self._error_handlers.remove(on_error)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if value and not self._enabled:
            self._start()
        elif not value and self._enabled:
            self._stop()
        self._enabled = value

    def close(self) -> None:
        """Stop delivering events and drop all handlers."""
        self.enabled = False
        with self._handlers_lock:
            self._handlers.clear()
            self._error_handlers.clear()

    def _deliver(self, raw_event: RawFSEvent) -> None:
        if not self._enabled:
            return
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(raw_event)

    def _deliver_error(self, error: Exception) -> None:
        with self._handlers_lock:
            handlers = list(self._error_handlers)
        if not handlers:
            logger.error(f"Unhandled watcher error for {self.path}: {error}")
        for handler in handlers:
            handler(error)

    @abstractmethod
    def _start(self) -> None:
        """Begin delivering notifications."""

    @abstractmethod
    def _stop(self) -> None:
        """Stop delivering notifications."""


class WatchdogEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog events to RawFSEvent."""

    def __init__(self, watcher: "WatchdogFileSystemWatcher"):
        super().__init__()
        self.watcher = watcher

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            raw_event = RawFSEvent(
                event_type=event.event_type,
                src_path=Path(os.fsdecode(event.src_path)),
                dest_path=Path(os.fsdecode(event.dest_path)) if getattr(event, "dest_path", "") else None,
                is_directory=event.is_directory or isinstance(event, _DIRECTORY_EVENTS),
                timestamp=time.time(),
            )
            self.watcher._deliver(raw_event)
        except Exception as e:
            self.watcher._deliver_error(e)


class WatchdogFileSystemWatcher(FileSystemWatcher):
    """Watcher backed by a dedicated watchdog observer thread."""

    def __init__(self, path: Path, filter: str = "*.*", recursive: bool = True):
        path = Path(path)
        if not path.exists():
            raise WatchSetupError(f"Directory does not exist: {path}", path=str(path))
        if not path.is_dir():
            raise WatchSetupError(f"Not a directory: {path}", path=str(path))
        if not os.access(path, os.R_OK | os.X_OK):
            raise WatchSetupError(f"Directory is not readable: {path}", path=str(path))

        super().__init__(path.resolve(), filter, recursive)
        self._observer: Optional[Observer] = None
        self._handler = WatchdogEventHandler(self)

    def _start(self) -> None:
        observer = Observer()
        try:
            observer.schedule(self._handler, str(self.path), recursive=self.recursive)
            observer.start()
        except OSError as e:
            raise WatchSetupError(f"Cannot watch {self.path}: {e}", path=str(self.path))
        self._observer = observer

    def _stop(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5.0)

    @property
    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class InMemoryFileSystemWatcher(FileSystemWatcher):
    """Watcher driven by explicit calls; used in tests."""

    def _start(self) -> None:
        pass

    def _stop(self) -> None:
        pass

    def emit(self, event_type: str, src_path: Path, dest_path: Optional[Path] = None,
             is_directory: bool = False) -> None:
        """Deliver a synthetic notification to every subscribed handler."""
        self._deliver(RawFSEvent(
            event_type=event_type,
            src_path=Path(src_path),
            dest_path=Path(dest_path) if dest_path else None,
            is_directory=is_directory,
        ))

    def raise_error(self, error: Exception) -> None:
        self._deliver_error(error)


WatcherConstructor = Callable[[Path, str, bool], FileSystemWatcher]


class FileWatcherFactory:
    """
    Creates watchers and keeps track of them, one per directory.

    Provides a single place to close every watcher on shutdown.
    """

    def __init__(self, constructor: Optional[WatcherConstructor] = None):
        """
        Initialize the factory.

        Args:
            constructor: Callable building a watcher from (path, filter,
                recursive); defaults to WatchdogFileSystemWatcher
        """
        self._constructor = constructor or WatchdogFileSystemWatcher
        self._watchers: Dict[Path, FileSystemWatcher] = {}
        self._lock = threading.Lock()

    def create(self, directory: Path, filter: str = "*.*", recursive: bool = True) -> FileSystemWatcher:
        """
        Create a watcher for a directory.

        Raises:
            WatchSetupError: If the directory cannot be watched
        """
        watcher = self._constructor(Path(directory), filter, recursive)
        with self._lock:
            self._watchers[Path(directory)] = watcher
        logger.info(f"Created file watcher for directory: {directory}")
        return watcher

    def get(self, directory: Path) -> Optional[FileSystemWatcher]:
        with self._lock:
            return self._watchers.get(Path(directory))

    def close_all(self) -> int:
        """
        Close every watcher created by this factory.

        Returns:
            Number of watchers closed
        """
        with self._lock:
            watchers = list(self._watchers.items())
            self._watchers.clear()

        for directory, watcher in watchers:
            try:
                watcher.close()
                logger.info(f"Disposed watcher for directory: {directory}")
            except Exception as e:
                logger.error(f"Error disposing watcher for directory {directory}: {e}")
        return len(watchers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._watchers)
