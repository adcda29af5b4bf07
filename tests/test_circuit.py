from unittest import mock
from unittest.mock import Mock

import pytest

from redis import exceptions as redis_exceptions

from clusterkv import Middleware
from clusterkv.circuit import (
    CircuitBreaker,
    NoopCircuitBreaker,
    State,
    make_circuit_breaker,
)
from clusterkv.config import CircuitBreakerConfig
from clusterkv.exceptions import (
    AmbiguousNodeError,
    CommandError,
    ConnectionError,
    OpenCircuitError,
    ReadTimeoutError,
)

from .conftest import _get_client


def failing(error):
    return Mock(side_effect=error)


def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            breaker.call(failing(ConnectionError("refused")))


@pytest.fixture()
def breaker():
    return CircuitBreaker(
        "127.0.0.1:7000",
        CircuitBreakerConfig(error_threshold=3, error_timeout=10, success_threshold=2),
    )


class TestCircuitBreaker:
    def test_starts_closed(self, breaker):
        assert breaker.state == State.CLOSED
        assert breaker.error_count == 0
        assert breaker.call(lambda x: x * 2, 21) == 42

    def test_opens_after_threshold(self, breaker):
        trip(breaker, 2)
        assert breaker.state == State.CLOSED
        trip(breaker, 1)
        assert breaker.state == State.OPEN

        func = Mock(return_value="OK")
        with pytest.raises(OpenCircuitError) as e:
            breaker.call(func)
        assert e.value.node_name == "127.0.0.1:7000"
        func.assert_not_called()

    def test_success_resets_consecutive_errors(self, breaker):
        trip(breaker, 2)
        breaker.call(lambda: "OK")
        trip(breaker, 2)
        assert breaker.state == State.CLOSED

    def test_errors_outside_window_do_not_add_up(self, breaker):
        with mock.patch("clusterkv.circuit.time") as mock_time:
            mock_time.monotonic.return_value = 100
            trip(breaker, 2)
            mock_time.monotonic.return_value = 111
            trip(breaker, 2)
            assert breaker.state == State.CLOSED
            assert breaker.error_count == 2
            trip(breaker, 1)
        assert breaker.state == State.OPEN

    def test_command_errors_are_not_counted(self, breaker):
        for _ in range(5):
            with pytest.raises(CommandError):
                breaker.call(failing(CommandError("WRONGTYPE")))
        assert breaker.state == State.CLOSED
        assert breaker.error_count == 0

    def test_routing_errors_are_not_counted(self, breaker):
        for _ in range(5):
            with pytest.raises(AmbiguousNodeError):
                breaker.call(failing(AmbiguousNodeError("no key")))
        assert breaker.state == State.CLOSED

    def test_requested_timeouts_are_not_counted(self, breaker):
        for _ in range(5):
            with pytest.raises(ReadTimeoutError):
                breaker.call(failing(ReadTimeoutError("timeout", requested_timeout=1)))
        assert breaker.state == State.CLOSED

    def test_socket_timeouts_are_counted(self, breaker):
        for _ in range(3):
            with pytest.raises(ReadTimeoutError):
                breaker.call(failing(ReadTimeoutError("timeout")))
        assert breaker.state == State.OPEN

    def test_half_open_closes_after_successes(self, breaker):
        trip(breaker, 3)
        breaker.state = State.HALF_OPEN
        breaker.call(lambda: "OK")
        assert breaker.state == State.HALF_OPEN
        breaker.call(lambda: "OK")
        assert breaker.state == State.CLOSED

    def test_half_open_failure_opens_again(self, breaker):
        trip(breaker, 3)
        breaker.state = State.HALF_OPEN
        with pytest.raises((ConnectionError, OpenCircuitError)):
            breaker.call(failing(ConnectionError("refused")))
        assert breaker.state == State.OPEN

    def test_repr(self, breaker):
        assert repr(breaker) == "<CircuitBreaker 127.0.0.1:7000 closed>"


class TestMakeCircuitBreaker:
    def test_disabled(self):
        breaker = make_circuit_breaker("n", None)
        assert isinstance(breaker, NoopCircuitBreaker)
        assert breaker.call(lambda: 1) == 1
        assert breaker.state == State.CLOSED

    def test_enabled(self):
        breaker = make_circuit_breaker("n", CircuitBreakerConfig())
        assert isinstance(breaker, CircuitBreaker)


class TestNodeBreakers:
    def test_breaker_is_per_node(self, cluster):
        r = _get_client(
            cluster,
            circuit_breaker={"error_threshold": 2, "error_timeout": 30},
            reconnect_attempts=0,
        )
        r.refresh()
        down = cluster.owner("foo")
        cluster.fail(down.port)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                r.call("GET", "foo")

        with pytest.raises(OpenCircuitError):
            r.call("GET", "foo")
        connects = down.connects
        with pytest.raises(OpenCircuitError):
            r.call("GET", "foo")
        assert down.connects == connects

        other_key = next(
            f"key:{i}" for i in range(100) if cluster.owner(f"key:{i}") is not down
        )
        assert r.call("SET", other_key, "v") == b"OK"
        r.close()

    def test_breaker_survives_refresh(self, cluster):
        r = _get_client(cluster, circuit_breaker={"error_threshold": 2})
        r.refresh()
        name = r.find_node_key("foo")
        breaker = r.nodes_manager.get_node(name).breaker
        r.refresh()
        assert r.nodes_manager.get_node(name).breaker is breaker
        r.close()

    def test_middleware_errors_are_not_counted(self, cluster):
        class Refusing(Middleware):
            def call(self, args, call_next):
                if args[0] == "GET":
                    raise redis_exceptions.ConnectionError("refused by middleware")
                return call_next(args)

        r = _get_client(
            cluster,
            circuit_breaker={"error_threshold": 2, "error_timeout": 30},
            middlewares=[Refusing],
            reconnect_attempts=0,
        )
        r.refresh()
        node = r.nodes_manager.get_node(r.find_node_key("foo"))
        for _ in range(3):
            with pytest.raises(ConnectionError) as e:
                r.call("GET", "foo")
            assert e.value.node is None
        assert node.breaker.state == State.CLOSED
        assert node.breaker.error_count == 0
        assert r.call("SET", "foo", "bar") == b"OK"
        r.close()
