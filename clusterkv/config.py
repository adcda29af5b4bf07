from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type, Union
from urllib.parse import unquote, urlparse

from redis.connection import ConnectionPool, SSLConnection

from clusterkv.load_balancer import ReplicaAffinity

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379
DEFAULT_TIMEOUT = 1.0
DEFAULT_RECONNECT_ATTEMPTS = 1
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_REFRESH_AFTER_REDIRECTS = 10
DEFAULT_CONCURRENCY = 5
DEFAULT_WATCH_RETRY_ATTEMPTS = 3

NodeSpec = Union[str, Tuple[str, int]]


@dataclass
class CircuitBreakerConfig:
    """
    Thresholds of the per-node circuit breaker.

    Attributes:
        error_threshold (int): Errors within ``error_timeout`` that open the circuit.
        error_timeout (float): Length of the error window, and how long the
            circuit stays open before probing again, in seconds.
        success_threshold (int): Consecutive successful probes that close it.
    """

    error_threshold: int = 5
    error_timeout: float = 60.0
    success_threshold: int = 1

    @classmethod
    def coerce(cls, value) -> Optional["CircuitBreakerConfig"]:
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(**value)
        raise TypeError(
            f"circuit_breaker must be a dict or CircuitBreakerConfig, got {value!r}"
        )


def parse_node(spec: NodeSpec) -> Dict[str, Any]:
    """
    Parse a startup node given as ``redis://[user:pass@]host:port``,
    ``rediss://...``, ``host:port`` or a ``(host, port)`` tuple.
    """
    if isinstance(spec, (tuple, list)):
        host, port = spec
        return {"host": host, "port": int(port)}

    if "://" not in spec:
        host, _, port = spec.rpartition(":")
        if not host:
            host, port = spec, DEFAULT_PORT
        return {"host": host, "port": int(port)}

    url = urlparse(spec)
    if url.scheme not in ("redis", "rediss", "valkey", "valkeys"):
        raise ValueError(
            "Node URL must specify one of the following schemes "
            "(redis://, rediss://, valkey://, valkeys://)"
        )
    node = {"host": url.hostname or DEFAULT_HOST, "port": url.port or DEFAULT_PORT}
    if url.username:
        node["username"] = unquote(url.username)
    if url.password:
        node["password"] = unquote(url.password)
    if url.scheme in ("rediss", "valkeys"):
        node["ssl"] = True
    return node


@dataclass
class ClusterConfig:
    """
    Configuration of a cluster client.

    Attributes:
        nodes: Startup nodes used to discover the cluster.
        replica: Send read-only commands to replicas.
        replica_affinity: How a replica is chosen for a read.
        fixed_hostname: Host that replaces every host the cluster reports.
        address_remap: Callable remapping ``(host, port)`` pairs reported by
            the cluster, e.g. when the client sits behind a proxy.
        connect_timeout, read_timeout, write_timeout: Socket timeouts in seconds.
        reconnect_attempts: Retries of a command after a connection error.
        max_redirects: Bound on MOVED/ASK/TRYAGAIN handling for one command.
        refresh_after_redirects: MOVED replies after which the whole topology
            is reloaded instead of patched.
        circuit_breaker: Per-node circuit breaker thresholds, ``None`` disables it.
        pool: ``{"size": int, "timeout": float}`` to use a blocking pool per node.
        concurrency: Worker threads used to fan out pipelines.
        watch_retry_attempts: Retries of a transaction whose watch was broken.
        middlewares: Interception layer around every command sent to a node.
        custom: Free-form settings made available to the middlewares.
        connection_pool_class: Pool class instantiated for every node.
        connection_kwargs: Extra arguments for the node connections.
    """

    nodes: Union[NodeSpec, Sequence[NodeSpec]] = field(
        default_factory=lambda: [f"redis://{DEFAULT_HOST}:{DEFAULT_PORT}"]
    )
    replica: bool = False
    replica_affinity: Union[str, ReplicaAffinity, None] = ReplicaAffinity.RANDOM
    fixed_hostname: Optional[str] = None
    address_remap: Optional[Callable[[Tuple[str, int]], Tuple[str, int]]] = None
    connect_timeout: float = DEFAULT_TIMEOUT
    read_timeout: float = DEFAULT_TIMEOUT
    write_timeout: float = DEFAULT_TIMEOUT
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    refresh_after_redirects: int = DEFAULT_REFRESH_AFTER_REDIRECTS
    circuit_breaker: Union[CircuitBreakerConfig, Dict[str, Any], None] = None
    pool: Optional[Dict[str, Any]] = None
    concurrency: int = DEFAULT_CONCURRENCY
    watch_retry_attempts: int = DEFAULT_WATCH_RETRY_ATTEMPTS
    middlewares: List[Type] = field(default_factory=list)
    custom: Dict[str, Any] = field(default_factory=dict)
    connection_pool_class: Optional[Type[ConnectionPool]] = None
    connection_kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.nodes, (str, tuple)):
            self.nodes = [self.nodes]
        if not self.nodes:
            raise ValueError(
                "ClusterConfig requires at least one node to discover the cluster"
            )
        self.startup_nodes = [parse_node(node) for node in self.nodes]
        self.replica_affinity = ReplicaAffinity.coerce(self.replica_affinity)
        self.circuit_breaker = CircuitBreakerConfig.coerce(self.circuit_breaker)
        if self.reconnect_attempts < 0 or self.max_redirects < 0:
            raise ValueError("Retry bounds must not be negative")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "ClusterConfig":
        return cls(nodes=[url], **kwargs)

    @property
    def use_replica(self) -> bool:
        return self.replica and self.replica_affinity is not None

    def remap_host_port(self, host: str, port: int) -> Tuple[str, int]:
        """
        Remap the host and port returned from the cluster to a different
        internal value.
        """
        if self.fixed_hostname:
            host = self.fixed_hostname
        if self.address_remap:
            return self.address_remap((host, port))
        return host, port

    def node_pool_kwargs(self, host: str, port: int, **overrides) -> Dict[str, Any]:
        "Keyword arguments of the connection pool of one node"
        kwargs = {
            "host": host,
            "port": port,
            "socket_connect_timeout": self.connect_timeout,
            "socket_timeout": max(self.read_timeout, self.write_timeout),
        }
        # credentials and TLS given on the startup URLs apply to every node
        for startup_node in self.startup_nodes:
            for option in ("username", "password"):
                if option in startup_node:
                    kwargs.setdefault(option, startup_node[option])
            if startup_node.get("ssl"):
                kwargs.setdefault("connection_class", SSLConnection)
        kwargs.update(self.connection_kwargs)
        kwargs.update(overrides)
        if self.pool is not None:
            kwargs["max_connections"] = self.pool.get("size", 5)
            kwargs["timeout"] = self.pool.get("timeout", self.connect_timeout)
        return kwargs

    def new_client(self):
        from clusterkv.client import ClusterClient

        return ClusterClient(self)
