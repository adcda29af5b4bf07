import logging
import time
from contextlib import contextmanager
from functools import partial
from typing import Any, List, Optional, Sequence

from redis import exceptions as redis_exceptions
from redis.connection import BlockingConnectionPool, ConnectionPool

from clusterkv.circuit import make_circuit_breaker
from clusterkv.exceptions import (
    AskError,
    ClusterDownError,
    ClusterKVError,
    CommandError,
    ConnectionError,
    MovedError,
    ReadTimeoutError,
    TryAgainError,
)
from clusterkv.middleware import MiddlewareChain
from clusterkv.utils import str_if_bytes

logger = logging.getLogger(__name__)

PRIMARY = "primary"
REPLICA = "replica"


def get_node_name(host: str, port: int) -> str:
    return f"{host}:{port}"


def translate_error(error: BaseException, node=None) -> BaseException:
    """
    Map an exception raised by redis-py to its ``clusterkv`` counterpart.
    ``node`` is the node whose own transport produced the error, ``None``
    when its origin is unknown.
    """
    if isinstance(error, ClusterKVError):
        return error
    # MovedError subclasses AskError in redis-py
    if isinstance(error, redis_exceptions.MovedError):
        return MovedError(error.slot_id, error.host, error.port, node=node)
    if isinstance(error, redis_exceptions.AskError):
        return AskError(error.slot_id, error.host, error.port, node=node)
    if isinstance(error, redis_exceptions.TryAgainError):
        return TryAgainError(str(error), node=node)
    if isinstance(error, redis_exceptions.ClusterDownError):
        return ClusterDownError(str(error), node=node)
    if isinstance(error, redis_exceptions.TimeoutError):
        return ReadTimeoutError(str(error), node=node)
    if isinstance(error, (redis_exceptions.ConnectionError, redis_exceptions.InvalidResponse)):
        return ConnectionError(str(error), node=node)
    if isinstance(error, redis_exceptions.RedisError):
        return CommandError(str(error), node=node)
    return error


class ClusterNode:
    """
    One node of the cluster: its connection pool, circuit breaker and
    middlewares. The object of a node is kept across topology refreshes so
    its breaker state survives reconnects.
    """

    def __init__(self, host, port, config, server_type=PRIMARY):
        self.host = host
        self.port = port
        self.name = get_node_name(host, port)
        self.server_type = server_type
        self.config = config
        self.latency: Optional[float] = None
        self.connection_pool = self._build_pool()
        self.breaker = make_circuit_breaker(self.name, config.circuit_breaker)
        self.middlewares = MiddlewareChain(config.middlewares, self, config)

    def __repr__(self):
        return (
            f"[host={self.host},"
            f"port={self.port},"
            f"name={self.name},"
            f"server_type={self.server_type}]"
        )

    def _build_pool(self) -> ConnectionPool:
        pool_class = self.config.connection_pool_class
        if pool_class is None:
            pool_class = (
                BlockingConnectionPool if self.config.pool is not None else ConnectionPool
            )
        kwargs = self.config.node_pool_kwargs(self.host, self.port)
        if self.config.use_replica:
            kwargs["redis_connect_func"] = self._on_connect
        return pool_class(**kwargs)

    @staticmethod
    def _on_connect(connection):
        """
        Initialize the connection, authenticate and select a database and send
        READONLY so reads can be served from replicas
        """
        connection.on_connect()
        connection.send_command("READONLY")
        if str_if_bytes(connection.read_response()) != "OK":
            raise redis_exceptions.ConnectionError("READONLY command failed")

    @contextmanager
    def acquire(self):
        "Exclusive use of a pooled connection, released on every exit path"
        try:
            connection = self.connection_pool.get_connection()
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=self) from e
        try:
            yield connection
        finally:
            self.connection_pool.release(connection)

    def disconnect(self):
        self.connection_pool.disconnect()

    def call(self, args: Sequence[Any], timeout=None, connection=None) -> Any:
        """
        Send one command and return its reply. ``timeout`` bounds the wait
        for the reply (``0`` waits forever), ``connection`` is used instead of
        a pooled one when given.
        """
        # the breaker only sees what reaches the node, not middleware errors
        send = partial(self.breaker.call, self._send, timeout=timeout, connection=connection)
        return self._through_middlewares(self.middlewares.call, args, send)

    def call_pipelined(
        self, commands: List[Sequence[Any]], connection=None, timeout=None
    ) -> List[Any]:
        """
        Send commands in one round trip. Error replies are returned in place
        as exception objects, transport errors are raised.
        """
        send = partial(
            self.breaker.call, self._send_pipelined, connection=connection, timeout=timeout
        )
        return self._through_middlewares(self.middlewares.call_pipelined, commands, send)

    @staticmethod
    def _through_middlewares(chain_call, payload, send):
        try:
            return chain_call(payload, send)
        except redis_exceptions.RedisError as e:
            # raised by a middleware, not by this node
            raise translate_error(e) from e

    def _send(self, args, timeout=None, connection=None):
        try:
            if connection is not None:
                return self._send_on(connection, args, timeout)
            with self.acquire() as connection:
                return self._send_on(connection, args, timeout)
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=self) from e

    def _send_on(self, connection, args, timeout):
        connection.send_command(*args)
        self._wait_for_reply(connection, timeout)
        return connection.read_response()

    def _wait_for_reply(self, connection, timeout):
        if timeout is None or connection.can_read(timeout or None):
            return
        # the reply may still arrive, the connection can't be reused
        connection.disconnect()
        raise ReadTimeoutError(
            f"Timed out after {timeout}s waiting for the reply of {self.name}",
            node=self,
            requested_timeout=timeout,
        )

    def _send_pipelined(self, commands, connection=None, timeout=None):
        try:
            if connection is not None:
                return self._pipelined_on(connection, commands, timeout)
            with self.acquire() as connection:
                return self._pipelined_on(connection, commands, timeout)
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=self) from e

    def _pipelined_on(self, connection, commands, timeout=None):
        connection.send_packed_command(connection.pack_commands(commands))
        self._wait_for_reply(connection, timeout)
        replies = []
        for _ in commands:
            try:
                replies.append(connection.read_response())
            except redis_exceptions.ResponseError as e:
                replies.append(translate_error(e, node=self))
        return replies

    def measure_latency(self) -> float:
        start = time.monotonic()
        try:
            self.call(("PING",))
        except ClusterKVError as e:
            logger.debug("Could not measure the latency of %s: %r", self.name, e)
            self.latency = float("inf")
        else:
            self.latency = time.monotonic() - start
        return self.latency
