"""Timer-driven dispatch of pending messages to the memory service."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import List, Optional

import httpx

from .client import MemoryServiceClient
from .exceptions import (
    CircuitOpenError,
    InvalidMessageError,
    SourceMissingError,
    WatcherAlreadyRunningError,
)
from .models import DispatchMessage, DispatchResult, FileEventType
from .store import MessageStore


class SchedulerState(Enum):
    IDLE = "idle"
    DRAINING = "draining"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


class DispatchScheduler:
    """
    Drains the message store on a fixed interval and ships each message.

    Messages within a tick are dispatched concurrently on a bounded thread
    pool. Every failure is logged and confined to its own message; nothing
    is re-enqueued.
    """

    def __init__(
        self,
        store: MessageStore,
        client: MemoryServiceClient,
        interval_seconds: float = 60.0,
        max_workers: int = 4,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Store to drain
            client: Memory service client
            interval_seconds: Seconds between ticks
            max_workers: Maximum concurrent requests per tick
            logger: Logger to use (defaults to the module logger)
        """
        self.store = store
        self.client = client
        self.interval_seconds = interval_seconds
        self.max_workers = max(1, max_workers)
        self._logger = logger or logging.getLogger(__name__)

        self._state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SchedulerState) -> None:
        with self._state_lock:
            if self._state != SchedulerState.STOPPED:
                self._state = state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """
        Start the timer thread. The first tick runs immediately.

        A stopped scheduler can be started again once its previous timer
        thread has exited.

        Raises:
            WatcherAlreadyRunningError: If the timer thread is still alive
        """
        if self.is_running:
            raise WatcherAlreadyRunningError("Dispatch scheduler is already running")

        self._logger.info("Dispatch scheduler starting")
        self._stop_event.clear()
        with self._state_lock:
            self._state = SchedulerState.IDLE
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="Dispatch",
        )
        self._thread = threading.Thread(target=self._timer_loop, name="DispatchTimer", daemon=True)
        self._thread.start()

    def stop(self, grace_period: float = 30.0) -> bool:
        """
        Stop accepting ticks and let an in-flight tick finish.

        Args:
            grace_period: Seconds to wait for an in-flight tick

        Returns:
            True if the scheduler stopped within the grace period
        """
        self._logger.info("Dispatch scheduler is stopping")
        self._stop_event.set()

        finished = True
        if self._thread is not None:
            self._thread.join(timeout=grace_period)
            finished = not self._thread.is_alive()
            if finished:
                self._thread = None
            else:
                self._logger.warning(
                    f"In-flight dispatch did not finish within {grace_period}s"
                )

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

        with self._state_lock:
            self._state = SchedulerState.STOPPED
        self._logger.info("Dispatch scheduler stopped")
        return finished

    def _timer_loop(self) -> None:
        self._logger.debug(f"Dispatch timer started, interval={self.interval_seconds}s")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                self._logger.error(f"An error occurred while processing messages: {e}")
            self._stop_event.wait(timeout=self.interval_seconds)

    def run_once(self) -> List[DispatchResult]:
        """
        Run one tick: drain the store and dispatch everything drained.

        Returns:
            One result per drained message
        """
        with self._tick_lock:
            if self.state == SchedulerState.STOPPED:
                return []

            self._set_state(SchedulerState.DRAINING)
            messages = self.store.take_all()

            if not messages:
                self._logger.debug("No messages to process")
                self._set_state(SchedulerState.IDLE)
                return []

            self._logger.info(f"Found {len(messages)} messages to process")
            self._set_state(SchedulerState.DISPATCHING)
            try:
                if self._executor is not None:
                    results = list(self._executor.map(self.dispatch, messages))
                else:
                    with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                        results = list(executor.map(self.dispatch, messages))
            finally:
                self._set_state(SchedulerState.IDLE)

            failed = sum(1 for r in results if not r.success and not r.skipped)
            if failed:
                self._logger.warning(f"{failed} of {len(results)} messages failed to dispatch")
            return results

    def dispatch(self, message: DispatchMessage) -> DispatchResult:
        """
        Deliver a single message. Never raises.

        Returns:
            The outcome of the attempt
        """
        document_id = getattr(message, "document_id", None)
        event = getattr(message, "event", None)
        event_type = getattr(event, "event_type", FileEventType.IGNORE)

        def failure(error: str, status_code: Optional[int] = None) -> DispatchResult:
            return DispatchResult(
                document_id=document_id or "",
                event_type=event_type,
                success=False,
                status_code=status_code,
                error=error,
            )

        try:
            if not isinstance(message, DispatchMessage):
                raise InvalidMessageError(f"expected DispatchMessage, got {type(message).__name__}")
            message.validate()

            if event_type == FileEventType.IGNORE:
                return DispatchResult(document_id, event_type, success=True, skipped=True)

            self._logger.info(
                f"Processing message {document_id} for file {event.file_name} "
                f"of type {event_type.value}"
            )

            if event_type == FileEventType.UPSERT:
                response = self.client.upload(message)
            elif event_type == FileEventType.DELETE:
                response = self.client.delete(message)
            else:
                self._logger.warning(
                    f"Unexpected event type {event_type} for message {document_id}"
                )
                return failure(f"unexpected event type {event_type}")

            if response.is_success:
                self._logger.info(f"Successfully processed message {document_id}")
                return DispatchResult(document_id, event_type, success=True,
                                      status_code=response.status_code)

            self._logger.error(
                f"Failed to process message {document_id}. Status code: {response.status_code}"
            )
            return failure(f"HTTP {response.status_code}", response.status_code)

        except InvalidMessageError as e:
            self._logger.error(f"Invalid message data for {document_id}: {e}")
            return failure(f"invalid message: {e}")
        except SourceMissingError as e:
            self._logger.error(f"File not found for message {document_id}: {e}")
            return failure(f"source missing: {e}")
        except CircuitOpenError as e:
            self._logger.error(
                f"Circuit breaker is open. Memory service is unavailable ({document_id}): {e}"
            )
            return failure(f"circuit open: {e}")
        except httpx.HTTPError as e:
            self._logger.error(f"Delivery failed for message {document_id}: {e}")
            return failure(f"delivery failed: {e}")
        except Exception as e:
            self._logger.error(f"Error processing message {document_id}: {e}")
            return failure(str(e))
