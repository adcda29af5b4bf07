"Core exceptions raised by the cluster client"


class ClusterKVError(Exception):
    pass


# Routing


class RoutingError(ClusterKVError):
    pass


class AmbiguousNodeError(RoutingError):
    "There is no key to decide which node a command should be sent to"
    pass


class ConsistencyError(RoutingError):
    """
    The keys of a transaction, a watch or a command map to more than one
    slot, or a transaction has no key at all to pick its node from.
    """

    pass


# Cluster state


class ClusterStateError(ClusterKVError):
    pass


class InitialSetupError(ClusterStateError):
    "None of the startup nodes could provide the cluster topology"

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or {}


class OrchestrationCommandNotSupported(ClusterStateError):
    "An administrative command without a single well-defined target node"

    def __init__(self, command):
        self.command = command
        super().__init__(
            f"{command} command should be run against a specific node "
            "with a single-node client"
        )


class ClusterDownError(ClusterStateError):
    def __init__(self, message, node=None):
        super().__init__(message)
        self.node = node


# Transport


class TransportError(ClusterKVError):
    def __init__(self, message, node=None):
        super().__init__(message)
        self.node = node


class ConnectionError(TransportError):
    pass


class ReadTimeoutError(TransportError):
    """
    The reply did not arrive in time. ``requested_timeout`` is set when the
    caller asked for the timeout itself (e.g. a blocking command).
    """

    def __init__(self, message, node=None, requested_timeout=None):
        super().__init__(message, node=node)
        self.requested_timeout = requested_timeout


# Circuit breaker


class BreakerError(ClusterKVError):
    pass


class OpenCircuitError(BreakerError):
    def __init__(self, node_name):
        self.node_name = node_name
        super().__init__(f"Circuit is open for {node_name}, failing fast")


# Errors coming from the store itself


class UpstreamError(ClusterKVError):
    pass


class CommandError(UpstreamError):
    def __init__(self, message, node=None):
        super().__init__(message)
        self.node = node


class RedirectError(CommandError):
    """
    src node: MIGRATING to dst node
        get > ASK error
        ask dst node > ASKING command
    dst node: IMPORTING from src node
        asking command only affects next command
        any op will be allowed after asking command
    """

    def __init__(self, slot_id, host, port, node=None):
        super().__init__(
            f"{self.REPLY_PREFIX} {slot_id} {host}:{port}", node=node
        )
        self.slot_id = int(slot_id)
        self.node_addr = self.host, self.port = host, int(port)


class MovedError(RedirectError):
    REPLY_PREFIX = "MOVED"


class AskError(RedirectError):
    REPLY_PREFIX = "ASK"


class TryAgainError(CommandError):
    pass


class ErrorCollection(UpstreamError):
    """
    Errors of a command sent to several nodes. ``errors`` maps the name of
    each failed node to its error.
    """

    def __init__(self, errors):
        self.errors = dict(errors)
        details = ", ".join(f"{name}: {err!r}" for name, err in self.errors.items())
        super().__init__(f"Errors occurred on {len(self.errors)} node(s): {details}")
