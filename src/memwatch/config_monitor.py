"""Reload and re-validate the settings file when it changes."""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import ServiceConfig, load_config
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class _SettingsFileHandler(FileSystemEventHandler):
    def __init__(self, monitor: "ConfigurationMonitor"):
        super().__init__()
        self.monitor = monitor

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ("created", "modified", "moved"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and Path(p).name == self.monitor.path.name for p in paths):
            self.monitor.schedule_reload()


class ConfigurationMonitor:
    """
    Watches the settings file and validates every change.

    Editors often write a file in several steps, so reloads are debounced.
    A valid configuration is passed to on_change; an invalid one is logged
    and passed to on_invalid.
    """

    def __init__(
        self,
        path: Path,
        on_change: Callable[[ServiceConfig], None],
        on_invalid: Optional[Callable[[ConfigurationError], None]] = None,
        debounce_seconds: float = 1.0,
        loader: Callable[[Path], ServiceConfig] = load_config,
    ):
        self.path = Path(path).resolve()
        self.on_change = on_change
        self.on_invalid = on_invalid
        self.debounce_seconds = debounce_seconds
        self._loader = loader
        self._observer: Optional[Observer] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        logger.info("Configuration Monitor - Starting")
        observer = Observer()
        observer.schedule(_SettingsFileHandler(self), str(self.path.parent), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Configuration Monitor - Started")

    def stop(self) -> None:
        logger.info("Configuration Monitor - Stopping")
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        logger.info("Configuration Monitor - Stopped")

    def schedule_reload(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self.reload)
            self._timer.daemon = True
            self._timer.start()

    def reload(self) -> Optional[ServiceConfig]:
        """
        Load and validate the settings file now.

        Returns:
            The new configuration, or None if it was invalid
        """
        logger.info("Configuration Monitor - Validating Configuration")
        try:
            config = self._loader(self.path)
        except ConfigurationError as e:
            logger.error(f"Configuration validation failed: {e}")
            if self.on_invalid is not None:
                self.on_invalid(e)
            return None

        logger.info("Configuration Monitor - Validation Successful")
        self.on_change(config)
        return config
