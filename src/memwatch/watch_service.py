"""Directory watch adapter: raw notifications in, coalesced store entries out."""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import DirectoryOptions, FileWatcherOptions
from .exceptions import InvalidEventError, WatchSetupError
from .fs_watcher import FileSystemWatcher, FileWatcherFactory
from .models import FileEvent, FileEventType, RawFSEvent
from .store import MessageStore

ENQUEUE_MAX_RETRIES = 3
ENQUEUE_RETRY_DELAY = 1.0
SCAN_WAIT_SLICE = 0.1

_EVENT_TYPE_MAP = {
    "deleted": FileEventType.DELETE,
    "created": FileEventType.UPSERT,
    "modified": FileEventType.UPSERT,
}


def convert_event_type(raw_type: str) -> FileEventType:
    """Map a raw notification kind to the change kind sent downstream."""
    return _EVENT_TYPE_MAP.get(raw_type, FileEventType.IGNORE)


class _WatchedRoot:
    """Per-directory subscription state."""

    def __init__(self, options: DirectoryOptions, watcher: FileSystemWatcher):
        self.options = options
        self.root = Path(os.path.abspath(options.path))
        self.watcher = watcher
        self.scan_done = threading.Event()
        self.scan_thread: Optional[threading.Thread] = None
        self.on_event: Optional[Callable[[RawFSEvent], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None


class FileWatcherService:
    """
    Watches every configured directory and feeds the message store.

    Each root gets its own watcher; notifications are normalized into
    FileEvents on the watcher's thread and added to the store. Renames are
    split into a delete of the old path followed by an upsert of the new one.
    Failures for a single event are logged and never stop the subscription.
    """

    def __init__(
        self,
        options: FileWatcherOptions,
        store: MessageStore,
        factory: Optional[FileWatcherFactory] = None,
        logger: Optional[logging.Logger] = None,
        retry_delay: float = ENQUEUE_RETRY_DELAY,
    ):
        """
        Initialize the service.

        Args:
            options: Directories to watch
            store: Store receiving normalized events
            factory: Watcher factory (defaults to watchdog-backed watchers)
            logger: Logger to use (defaults to the module logger)
            retry_delay: Seconds between retries of a failed enqueue
        """
        self.options = options
        self.store = store
        self.factory = factory if factory is not None else FileWatcherFactory()
        self._logger = logger or logging.getLogger(__name__)
        self._retry_delay = retry_delay
        self._roots: Dict[str, _WatchedRoot] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    def start(self) -> int:
        """
        Start watching every configured directory.

        A directory that cannot be watched is logged and skipped.

        Returns:
            Number of directories being watched
        """
        self._logger.info("File Watcher Service - Starting")
        self._stop_event.clear()
        for directory in self.options.directories:
            try:
                self.start_watching(directory)
            except WatchSetupError as e:
                self._logger.error(f"Cannot watch {directory.path}: {e}")
        return len(self._roots)

    def start_watching(self, directory: DirectoryOptions) -> FileSystemWatcher:
        """
        Subscribe to one directory without blocking.

        Args:
            directory: The root to watch

        Returns:
            The enabled watcher

        Raises:
            WatchSetupError: If the directory is inaccessible
        """
        with self._lock:
            if directory.path in self._roots:
                return self._roots[directory.path].watcher

        watcher = self.factory.create(
            Path(directory.path),
            directory.filter,
            directory.include_subdirectories,
        )
        watched = _WatchedRoot(directory, watcher)
        watched.on_event = lambda raw: self._on_raw_event(raw, watched)
        watched.on_error = lambda error: self._on_error(error, watched)
        watcher.subscribe(watched.on_event, watched.on_error)

        try:
            watcher.enabled = True
        except WatchSetupError:
            watcher.close()
            raise

        with self._lock:
            self._roots[directory.path] = watched

        if directory.initial_scan:
            watched.scan_thread = threading.Thread(
                target=self._initial_scan,
                args=(watched,),
                name=f"InitialScan-{directory.index}",
                daemon=True,
            )
            watched.scan_thread.start()
        else:
            watched.scan_done.set()

        self._logger.info(f"File Watcher Service - Watching {directory.path}")
        return watcher

    def stop(self, timeout: float = 5.0) -> None:
        """Unsubscribe every watcher and wait for initial scans to stop."""
        self._stop_event.set()
        with self._lock:
            roots = list(self._roots.values())
            self._roots.clear()

        for watched in roots:
            try:
                watched.watcher.unsubscribe(watched.on_event, watched.on_error)
                watched.watcher.close()
            except Exception as e:
                self._logger.error(f"Error closing watcher for {watched.root}: {e}")

        for watched in roots:
            if watched.scan_thread is not None and watched.scan_thread.is_alive():
                watched.scan_thread.join(timeout=timeout)

        self.factory.close_all()
        self._logger.info("File Watcher Service - Stopped")

    def initial_scans_done(self) -> bool:
        with self._lock:
            return all(w.scan_done.is_set() for w in self._roots.values())

    def wait_for_initial_scans(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until every initial scan has finished.

        The wait ends early when the service is stopped or ``cancel`` is set.

        Args:
            timeout: Maximum seconds to wait overall (None waits forever)
            cancel: Optional event aborting the wait when set

        Returns:
            True if all scans completed in time, False on timeout or cancel
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            events = [w.scan_done for w in self._roots.values()]
        for done in events:
            while not done.is_set():
                if self._stop_event.is_set() or (cancel is not None and cancel.is_set()):
                    return False
                slice_seconds = SCAN_WAIT_SLICE
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    slice_seconds = min(slice_seconds, remaining)
                done.wait(slice_seconds)
        return True

    def get_watched_roots(self) -> List[Path]:
        with self._lock:
            return [w.root for w in self._roots.values()]

    def _initial_scan(self, watched: _WatchedRoot) -> None:
        """Upsert every existing file under a root."""
        options = watched.options
        count = 0
        self._logger.info(f"File Watcher Service - Initial Scan Starting {options.path}")
        try:
            for path in self._iter_files(watched.root, options.include_subdirectories):
                if self._stop_event.is_set():
                    self._logger.info(f"Initial scan of {options.path} cancelled")
                    return
                if not options.matches(path.name):
                    continue
                if self._enqueue(FileEventType.UPSERT, path, watched):
                    count += 1
            self._logger.info(
                f"File Watcher Service - Initial Scan Complete {options.path} ({count} files)"
            )
        except Exception as e:
            self._logger.error(f"Error during initial scan of {options.path}: {e}")
        finally:
            watched.scan_done.set()

    def _iter_files(self, root: Path, recursive: bool):
        if recursive:
            for dirpath, _, filenames in os.walk(root, onerror=self._on_walk_error):
                for name in filenames:
                    yield Path(dirpath) / name
        else:
            with os.scandir(root) as entries:
                for entry in entries:
                    if entry.is_file():
                        yield Path(entry.path)

    def _on_walk_error(self, error: OSError) -> None:
        self._logger.warning(f"Skipping unreadable path during scan: {error}")

    def _on_raw_event(self, raw_event: RawFSEvent, watched: _WatchedRoot) -> None:
        """Normalize one raw notification and forward it to the store."""
        self._logger.debug(f"Raw event: {raw_event.event_type} - {raw_event.src_path}")
        try:
            if raw_event.is_directory:
                return

            options = watched.options

            if raw_event.event_type == "moved":
                if raw_event.dest_path is None:
                    return
                if not (options.matches(raw_event.src_path.name)
                        or options.matches(raw_event.dest_path.name)):
                    return
                self._enqueue(FileEventType.DELETE, raw_event.src_path, watched, raw_event.timestamp)
                self._enqueue(FileEventType.UPSERT, raw_event.dest_path, watched, raw_event.timestamp)
                return

            event_type = convert_event_type(raw_event.event_type)
            if event_type == FileEventType.IGNORE:
                return
            if not options.matches(raw_event.src_path.name):
                return

            self._enqueue(event_type, raw_event.src_path, watched, raw_event.timestamp)
        except PermissionError as e:
            self._logger.error(
                f"Access denied when processing {raw_event.event_type} event for "
                f"{raw_event.src_path}. Check file permissions: {e}"
            )
        except OSError as e:
            self._logger.error(
                f"IO error processing {raw_event.event_type} event for "
                f"{raw_event.src_path}. The file may be in use: {e}"
            )
        except Exception as e:
            self._logger.error(
                f"Unexpected error processing {raw_event.event_type} event for "
                f"{raw_event.src_path}: {e}"
            )

    def _enqueue(
        self,
        event_type: FileEventType,
        full_path: Path,
        watched: _WatchedRoot,
        timestamp: Optional[float] = None,
    ) -> bool:
        """
        Build an event for a path and add it to the store, retrying I/O errors.

        Returns:
            True if the store accepted the event
        """
        full_path = self._to_configured_path(Path(full_path), watched)
        for attempt in range(ENQUEUE_MAX_RETRIES):
            try:
                event = FileEvent.from_path(event_type, full_path, watched.root, timestamp)
                return self.store.add(event) is not None
            except InvalidEventError as e:
                self._logger.error(f"Invalid event for {full_path}: {e}")
                return False
            except OSError as e:
                self._logger.warning(
                    f"IO error when enqueueing file event for {full_path}. "
                    f"Retry {attempt + 1} of {ENQUEUE_MAX_RETRIES}: {e}"
                )
                if self._stop_event.wait(self._retry_delay):
                    return False

        self._logger.error(
            f"Failed to enqueue file event for {full_path} after {ENQUEUE_MAX_RETRIES} retries"
        )
        return False

    def _on_error(self, error: Exception, watched: _WatchedRoot) -> None:
        self._logger.error(f"An error occurred in the file watcher for {watched.root}: {error}")

    @staticmethod
    def _to_configured_path(path: Path, watched: _WatchedRoot) -> Path:
        """Re-anchor a watcher-reported path under the configured root spelling."""
        try:
            relative = path.relative_to(watched.watcher.path)
        except ValueError:
            return path
        return watched.root / relative
