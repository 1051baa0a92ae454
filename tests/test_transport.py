"""Tests for transport module."""

import pytest
import random

import httpx

from src.memwatch.exceptions import CircuitOpenError
from src.memwatch.transport import (
    CircuitBreaker,
    CircuitState,
    ResilientTransport,
    RetryPolicy,
    is_transient_status,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedHandler:
    """MockTransport handler replaying a list of statuses or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)


def make_client(handler, retries=2, threshold=100, clock=None):
    sleeps = []
    transport = ResilientTransport(
        inner=httpx.MockTransport(handler),
        retry_policy=RetryPolicy(retries=retries, first_retry_delay=0.5),
        circuit_breaker=CircuitBreaker(
            failure_threshold=threshold,
            break_duration=30.0,
            clock=clock or FakeClock(),
        ),
        sleep=sleeps.append,
    )
    return httpx.Client(base_url="http://memory", transport=transport), sleeps


class TestRetryPolicy:
    """Tests for RetryPolicy class."""

    def test_delay_count(self):
        assert len(list(RetryPolicy(retries=3).delays())) == 3
        assert list(RetryPolicy(retries=0).delays()) == []

    def test_fast_first(self):
        delays = list(RetryPolicy(retries=3, first_retry_delay=1.0).delays())
        assert delays[0] == 0.0
        assert all(d >= 1.0 for d in delays[1:])

    def test_without_fast_first(self):
        delays = list(RetryPolicy(retries=2, first_retry_delay=1.0, fast_first=False).delays())
        assert all(d >= 1.0 for d in delays)

    def test_max_delay(self):
        policy = RetryPolicy(retries=10, first_retry_delay=5.0, max_delay=8.0, rng=random.Random(1))
        assert all(d <= 8.0 for d in policy.delays())

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            RetryPolicy(retries=-1)

    def test_should_retry_response(self):
        policy = RetryPolicy()
        assert policy.should_retry_response(httpx.Response(503))
        assert policy.should_retry_response(httpx.Response(408))
        assert policy.should_retry_response(httpx.Response(404))
        assert not policy.should_retry_response(httpx.Response(400))
        assert not policy.should_retry_response(httpx.Response(200))

    def test_transient_status(self):
        assert is_transient_status(500)
        assert is_transient_status(408)
        assert not is_transient_status(404)


class TestCircuitBreaker:
    """Tests for CircuitBreaker class."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
        for _ in range(3):
            breaker.before_call()
            breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_after == 30.0

    def test_success_resets_count(self):
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_break(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, break_duration=10.0, clock=clock)
        breaker.record_failure()

        clock.advance(10.0)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_single_probe(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, break_duration=10.0, clock=clock)
        breaker.record_failure()
        clock.advance(10.0)

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, break_duration=10.0, clock=clock)
        breaker.record_failure()
        clock.advance(10.0)

        breaker.before_call()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_probe_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=5, break_duration=10.0, clock=clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(10.0)

        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_reset(self):
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestResilientTransport:
    """Tests for ResilientTransport class."""

    def test_success_no_retry(self):
        handler = ScriptedHandler(200)
        client, sleeps = make_client(handler)

        response = client.get("/")

        assert response.status_code == 200
        assert handler.calls == 1
        assert sleeps == []

    def test_retries_server_errors(self):
        handler = ScriptedHandler(503, 502, 200)
        client, sleeps = make_client(handler)

        response = client.get("/")

        assert response.status_code == 200
        assert handler.calls == 3
        # first retry is immediate
        assert len(sleeps) == 1

    def test_returns_last_response_when_exhausted(self):
        handler = ScriptedHandler(500)
        client, _ = make_client(handler, retries=2)

        response = client.get("/")

        assert response.status_code == 500
        assert handler.calls == 3

    def test_retries_not_found(self):
        handler = ScriptedHandler(404, 200)
        client, _ = make_client(handler)
        assert client.get("/").status_code == 200
        assert handler.calls == 2

    def test_client_errors_not_retried(self):
        handler = ScriptedHandler(400)
        client, _ = make_client(handler)
        assert client.get("/").status_code == 400
        assert handler.calls == 1

    def test_retries_transport_errors(self):
        handler = ScriptedHandler(httpx.ConnectError("refused"), 200)
        client, _ = make_client(handler)
        assert client.get("/").status_code == 200
        assert handler.calls == 2

    def test_raises_last_transport_error(self):
        handler = ScriptedHandler(httpx.ConnectError("refused"))
        client, _ = make_client(handler, retries=1)
        with pytest.raises(httpx.ConnectError):
            client.get("/")
        assert handler.calls == 2

    def test_open_circuit_fails_fast(self):
        handler = ScriptedHandler(500)
        client, _ = make_client(handler, retries=0, threshold=2)

        client.get("/")
        client.get("/")
        with pytest.raises(CircuitOpenError):
            client.get("/")
        assert handler.calls == 2

    def test_open_circuit_not_retried(self):
        handler = ScriptedHandler(500)
        client, sleeps = make_client(handler, retries=5, threshold=2)

        with pytest.raises(CircuitOpenError):
            client.get("/")
        assert handler.calls == 2

    def test_circuit_recovers(self):
        clock = FakeClock()
        handler = ScriptedHandler(500, 500, 200)
        client, _ = make_client(handler, retries=0, threshold=2, clock=clock)

        client.get("/")
        client.get("/")
        with pytest.raises(CircuitOpenError):
            client.get("/")

        clock.advance(30.0)
        assert client.get("/").status_code == 200
        assert client.get("/").status_code == 200

    def test_client_errors_do_not_trip_circuit(self):
        handler = ScriptedHandler(400)
        client, _ = make_client(handler, retries=0, threshold=1)
        for _ in range(3):
            assert client.get("/").status_code == 400
        assert handler.calls == 3

    def test_unexpected_error_while_half_open_reopens_circuit(self):
        clock = FakeClock()
        handler = ScriptedHandler(500, RuntimeError("boom"), 200)
        client, _ = make_client(handler, retries=0, threshold=1, clock=clock)

        client.get("/")
        clock.advance(30.0)
        with pytest.raises(RuntimeError):
            client.get("/")
        with pytest.raises(CircuitOpenError):
            client.get("/")

        clock.advance(30.0)
        assert client.get("/").status_code == 200
        assert handler.calls == 3
