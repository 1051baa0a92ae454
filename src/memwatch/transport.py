"""
Retry and circuit-breaker policy for requests to the memory service.

ResilientTransport wraps another httpx transport. Each request is retried on
transient failures with decorrelated-jitter exponential backoff; every attempt
passes through a circuit breaker that fails fast once the service has failed
too many times in a row.
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Callable, Iterator, Optional

import httpx

from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({404, 408})


def is_transient_status(status_code: int) -> bool:
    """5xx and 408 count as transient server failures."""
    return status_code >= 500 or status_code == 408


class RetryPolicy:
    """
    Retry schedule with decorrelated jitter.

    Attributes:
        retries: Number of retries after the first attempt
        first_retry_delay: Median delay of the first backoff step in seconds
        max_delay: Upper bound for any single delay
        fast_first: Whether the first retry happens immediately
    """

    def __init__(
        self,
        retries: int = 2,
        first_retry_delay: float = 1.0,
        max_delay: float = 30.0,
        fast_first: bool = True,
        rng: Optional[random.Random] = None,
    ):
        if retries < 0:
            raise ValueError("retries cannot be negative")
        self.retries = retries
        self.first_retry_delay = first_retry_delay
        self.max_delay = max_delay
        self.fast_first = fast_first
        self._rng = rng or random.Random()

    def delays(self) -> Iterator[float]:
        """Yield one delay per retry."""
        previous = self.first_retry_delay
        for attempt in range(self.retries):
            if attempt == 0 and self.fast_first:
                yield 0.0
                continue
            upper = max(self.first_retry_delay, previous * 3)
            delay = min(self.max_delay, self._rng.uniform(self.first_retry_delay, upper))
            previous = delay
            yield delay

    def should_retry_response(self, response: httpx.Response) -> bool:
        return is_transient_status(response.status_code) or response.status_code in RETRYABLE_STATUS_CODES


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Thread-safe consecutive-failure circuit breaker.

    After failure_threshold consecutive failures the circuit opens and every
    call fails fast for break_duration seconds. The next call after that is
    let through as a probe: success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        break_duration: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.break_duration = break_duration
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def _refresh(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.break_duration:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("Circuit breaker is half-open")

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open or a probe is already running
        """
        with self._lock:
            self._refresh()
            if self._state == CircuitState.OPEN:
                remaining = self.break_duration - (self._clock() - self._opened_at)
                raise CircuitOpenError(
                    "Circuit breaker is open; memory service is unavailable",
                    retry_after=max(0.0, remaining),
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(
                        "Circuit breaker is half-open; probe already in flight",
                        retry_after=0.0,
                    )
                self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit breaker reset")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._trip()

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            f"Circuit breaker opened for {self.break_duration}s due to failures"
        )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probe_in_flight = False


class ResilientTransport(httpx.BaseTransport):
    """httpx transport applying a RetryPolicy around a CircuitBreaker."""

    def __init__(
        self,
        inner: Optional[httpx.BaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner or httpx.HTTPTransport()
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._sleep = sleep

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        delays = self.retry_policy.delays()
        attempt = 0

        while True:
            attempt += 1
            response = None
            error = None
            try:
                response = self._send_once(request)
            except httpx.TransportError as e:
                error = e

            if response is not None and not self.retry_policy.should_retry_response(response):
                return response

            delay = next(delays, None)
            if delay is None:
                if error is not None:
                    raise error
                return response

            if response is not None:
                logger.warning(
                    f"{request.method} {request.url.path} returned {response.status_code}, "
                    f"retry {attempt} in {delay:.2f}s"
                )
                response.close()
            else:
                logger.warning(
                    f"{request.method} {request.url.path} failed: {error}, "
                    f"retry {attempt} in {delay:.2f}s"
                )

            if delay > 0:
                self._sleep(delay)

    def _send_once(self, request: httpx.Request) -> httpx.Response:
        """Send one attempt through the circuit breaker."""
        self.circuit_breaker.before_call()
        try:
            response = self.inner.handle_request(request)
        except Exception:
            # Any failure ends the half-open trial call
            self.circuit_breaker.record_failure()
            raise

        if is_transient_status(response.status_code):
            self.circuit_breaker.record_failure()
        else:
            self.circuit_breaker.record_success()
        return response

    def close(self) -> None:
        self.inner.close()
