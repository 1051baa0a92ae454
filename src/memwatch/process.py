"""Pipeline orchestrator wiring watchers, store and dispatcher together."""

import logging
import threading
from typing import List, Optional

import httpx

from .client import MemoryServiceClient, build_transport
from .config import ServiceConfig
from .dispatcher import DispatchScheduler
from .exceptions import WatcherAlreadyRunningError
from .fs_watcher import FileWatcherFactory, WatcherConstructor
from .store import MessageStore
from .watch_service import FileWatcherService

logger = logging.getLogger(__name__)


class WatcherPipeline:
    """
    Main orchestrator for the ingestion and dispatch pipeline.

    Every component receives its collaborators explicitly, so tests can swap
    the watcher constructor and the HTTP transport without touching globals.
    """

    def __init__(
        self,
        config: ServiceConfig,
        watcher_constructor: Optional[WatcherConstructor] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Validated service configuration
            watcher_constructor: Builds a watcher per directory (defaults to watchdog)
            transport: Innermost HTTP transport (defaults to a real connection pool);
                retry and circuit-breaker policy are layered on top of it
        """
        self.config = config
        self.store = MessageStore(config.file_watcher.directories)
        self.watch_service = FileWatcherService(
            config.file_watcher,
            self.store,
            FileWatcherFactory(watcher_constructor),
        )
        self.client = MemoryServiceClient(
            config.memory_service,
            build_transport(config.memory_service, inner=transport),
        )
        self.scheduler = DispatchScheduler(
            self.store,
            self.client,
            interval_seconds=config.memory_service.schedule_seconds,
            max_workers=config.memory_service.parallel_uploads,
        )

        self._running = False
        self._closed = False
        self._ready = threading.Event()
        self._lock = threading.Lock()

    def start(self, cancel: Optional[threading.Event] = None) -> bool:
        """
        Start watching and dispatching. Returns once the pipeline is ready.

        When wait_for_initial_scans is set, readiness waits for every
        initial scan to finish. The wait ends early if ``cancel`` is set or
        stop() is called from another thread; the watchers are then torn
        down and the dispatcher is never started.

        Args:
            cancel: Optional event aborting the startup wait

        Returns:
            True if the pipeline is running, False if startup was cancelled

        Raises:
            WatcherAlreadyRunningError: If already running
        """
        with self._lock:
            if self._running:
                raise WatcherAlreadyRunningError("Pipeline is already running")
            self._running = True
            self._ready.clear()

        try:
            watched = self.watch_service.start()
            logger.info(f"Watching {watched} of {len(self.config.file_watcher.directories)} directories")

            if self.config.file_watcher.wait_for_initial_scans:
                logger.info("Waiting for initial scans to complete")
                if not self.watch_service.wait_for_initial_scans(cancel=cancel):
                    logger.info("Startup cancelled while waiting for initial scans")
                    self._abort_start()
                    return False
                logger.info("Initial scans completed")

            with self._lock:
                if not self._running:
                    logger.info("Pipeline stopped during startup")
                    return False
                self.scheduler.start()
                self._ready.set()
        except Exception:
            self._abort_start()
            raise

        logger.info("File watching setup completed")
        return True

    def _abort_start(self) -> None:
        """Undo a partial start unless stop() already did."""
        with self._lock:
            was_running = self._running
            self._running = False
        if was_running:
            self.watch_service.stop()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def stop(self, grace_period: Optional[float] = None) -> None:
        """
        Stop the pipeline.

        Subscriptions are torn down first, then the in-flight dispatch tick
        is given up to grace_period seconds to finish.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False

        if grace_period is None:
            grace_period = self.config.shutdown_timeout

        self.watch_service.stop()
        self.scheduler.stop(grace_period=grace_period)
        self._ready.clear()

        pending = len(self.store)
        if pending:
            logger.warning(f"Discarding {pending} undelivered messages on shutdown")
        logger.info("Pipeline stopped")

    def get_watched_roots(self) -> List:
        return self.watch_service.get_watched_roots()

    @property
    def is_running(self) -> bool:
        return self._running

    def close(self) -> None:
        """Stop the pipeline and release the HTTP client."""
        self.stop()
        if not self._closed:
            self._closed = True
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
