from typing import Any, Callable, List, Sequence


class Middleware:
    """
    Interception layer around every command sent to one node.

    A middleware class is listed in ``ClusterConfig.middlewares`` and
    instantiated once per node with that node and the client configuration.
    Override ``call`` and/or ``call_pipelined`` and delegate to ``call_next``
    to let the command through.
    """

    def __init__(self, node, config):
        self.node = node
        self.config = config

    def call(self, args: Sequence[Any], call_next: Callable) -> Any:
        return call_next(args)

    def call_pipelined(
        self, commands: List[Sequence[Any]], call_next: Callable
    ) -> List[Any]:
        return call_next(commands)


class MiddlewareChain:
    "The middlewares of one node, the first listed being the outermost"

    def __init__(self, middlewares, node, config):
        self.middlewares = [cls(node, config) for cls in middlewares]

    def __bool__(self):
        return bool(self.middlewares)

    def call(self, args, send: Callable):
        for middleware in reversed(self.middlewares):
            send = _bind(middleware.call, send)
        return send(args)

    def call_pipelined(self, commands, send: Callable):
        for middleware in reversed(self.middlewares):
            send = _bind(middleware.call_pipelined, send)
        return send(commands)


def _bind(method, call_next):
    return lambda payload: method(payload, call_next)
