from clusterkv.client import ClusterClient
from clusterkv.config import CircuitBreakerConfig, ClusterConfig
from clusterkv.crc import key_slot
from clusterkv.exceptions import (
    AmbiguousNodeError,
    AskError,
    BreakerError,
    ClusterDownError,
    ClusterKVError,
    ClusterStateError,
    CommandError,
    ConnectionError,
    ConsistencyError,
    ErrorCollection,
    InitialSetupError,
    MovedError,
    OpenCircuitError,
    OrchestrationCommandNotSupported,
    ReadTimeoutError,
    RoutingError,
    TransportError,
    TryAgainError,
    UpstreamError,
)
from clusterkv.load_balancer import ReplicaAffinity
from clusterkv.middleware import Middleware


def int_or_str(value):
    try:
        return int(value)
    except ValueError:
        return value


__version__ = "0.1.0"


VERSION = tuple(map(int_or_str, __version__.split('.')))

__all__ = [
    'AmbiguousNodeError',
    'AskError',
    'BreakerError',
    'CircuitBreakerConfig',
    'ClusterClient',
    'ClusterConfig',
    'ClusterDownError',
    'ClusterKVError',
    'ClusterStateError',
    'CommandError',
    'ConnectionError',
    'ConsistencyError',
    'ErrorCollection',
    'InitialSetupError',
    'key_slot',
    'Middleware',
    'MovedError',
    'OpenCircuitError',
    'OrchestrationCommandNotSupported',
    'ReadTimeoutError',
    'ReplicaAffinity',
    'RoutingError',
    'TransportError',
    'TryAgainError',
    'UpstreamError',
]
