import logging
import time
from enum import Enum
from typing import Callable, Optional

import pybreaker

from clusterkv.config import CircuitBreakerConfig
from clusterkv.exceptions import (
    CommandError,
    OpenCircuitError,
    ReadTimeoutError,
    RoutingError,
)

logger = logging.getLogger(__name__)


class State(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class WindowedMemoryStorage(pybreaker.CircuitMemoryStorage):
    """
    Failure counter that only counts errors inside a sliding window: the
    first error older than ``window`` seconds starts a new count.
    """

    def __init__(self, state: str, window: float):
        super().__init__(state)
        self._window = window
        self._window_started_at: Optional[float] = None

    def increment_counter(self):
        now = time.monotonic()
        if (
            self._window_started_at is None
            or now - self._window_started_at > self._window
        ):
            super().reset_counter()
            self._window_started_at = now
        super().increment_counter()

    def reset_counter(self):
        super().reset_counter()
        self._window_started_at = None


class StateLogger(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        old_name = old_state.name if old_state is not None else None
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(
                "Circuit for %s changed from %s to %s", cb.name, old_name, new_state.name
            )
        else:
            logger.debug(
                "Circuit for %s changed from %s to %s", cb.name, old_name, new_state.name
            )


class CircuitBreaker:
    """
    Per-node circuit breaker backed by pybreaker.

    Closed: calls go through, errors are counted inside ``error_timeout``.
    Open: calls fail fast with ``OpenCircuitError`` until ``error_timeout``
    has elapsed. Half-open: probes go through, ``success_threshold``
    successes close the circuit, any failure opens it again.

    Errors the store replied with, routing errors and timeouts the caller
    asked for do not count.
    """

    def __init__(self, node_name: str, config: CircuitBreakerConfig):
        self.node_name = node_name
        self.config = config
        self._cb = pybreaker.CircuitBreaker(
            fail_max=config.error_threshold,
            reset_timeout=config.error_timeout,
            success_threshold=config.success_threshold,
            exclude=[self._is_excluded],
            listeners=[StateLogger()],
            state_storage=WindowedMemoryStorage(
                pybreaker.STATE_CLOSED, config.error_timeout
            ),
            name=node_name,
            throw_new_error_on_trip=False,
        )
        self._state_pb_mapper = {
            State.CLOSED: self._cb.close,
            State.OPEN: self._cb.open,
            State.HALF_OPEN: self._cb.half_open,
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.node_name} {self.state.value}>"

    @property
    def state(self) -> State:
        return State(value=self._cb.current_state)

    @state.setter
    def state(self, state: State):
        self._state_pb_mapper[state]()

    @property
    def error_count(self) -> int:
        return self._cb.fail_counter

    def _is_excluded(self, error: BaseException) -> bool:
        if isinstance(error, (CommandError, RoutingError)):
            return True
        if isinstance(error, ReadTimeoutError) and error.requested_timeout is not None:
            return error.requested_timeout < self.config.error_timeout
        return False

    def call(self, func: Callable, *args, **kwargs):
        try:
            return self._cb.call(func, *args, **kwargs)
        except pybreaker.CircuitBreakerError:
            raise OpenCircuitError(self.node_name) from None


class NoopCircuitBreaker:
    "Stands in for a breaker when none is configured"

    state = State.CLOSED
    error_count = 0

    def __init__(self, node_name: str):
        self.node_name = node_name

    def call(self, func: Callable, *args, **kwargs):
        return func(*args, **kwargs)


def make_circuit_breaker(node_name: str, config: Optional[CircuitBreakerConfig]):
    if config is None:
        return NoopCircuitBreaker(node_name)
    return CircuitBreaker(node_name, config)
