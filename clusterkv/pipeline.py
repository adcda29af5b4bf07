import logging
from concurrent.futures.thread import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from clusterkv.crc import slot_of_keys
from clusterkv.exceptions import (
    AmbiguousNodeError,
    AskError,
    ClusterKVError,
    ConnectionError,
    ErrorCollection,
    MovedError,
)
from clusterkv.node import ClusterNode
from clusterkv.router import COMMAND_FLAGS, Router

logger = logging.getLogger(__name__)


class PipelineCommand:
    def __init__(
        self,
        args: Sequence[Any],
        position: int,
        callback: Optional[Callable] = None,
        timeout=None,
    ):
        self.args = tuple(args)
        self.position = position
        self.callback = callback
        self.timeout = timeout
        self.slot: Optional[int] = None
        self.readonly = False
        self.node: Optional[ClusterNode] = None
        self.result: Any = None

    def __repr__(self):
        return f"<PipelineCommand #{self.position} {self.args!r}>"


class NodeCommands:
    "The commands of a pipeline sent to one node, in one round trip"

    def __init__(self, node: ClusterNode):
        self.node = node
        self.commands: List[PipelineCommand] = []

    def append(self, c: PipelineCommand):
        c.node = self.node
        self.commands.append(c)

    def execute(self):
        commands = self.commands
        # a blocking command bounds the wait for the whole batch
        timeouts = [c.timeout for c in commands if c.timeout is not None]
        timeout = None
        if timeouts:
            timeout = 0 if 0 in timeouts else max(timeouts)
        try:
            replies = self.node.call_pipelined([c.args for c in commands], timeout=timeout)
        except ClusterKVError as e:
            for c in commands:
                c.result = e
            return
        for c, reply in zip(commands, replies):
            c.result = reply


class ClusterPipeline:
    """
    Batches commands and sends them with one round trip per node, the
    batches of different nodes being sent concurrently. Results are returned
    in the order the commands were added.

    Usage::

        with client.pipeline() as pipe:
            pipe.call("SET", "{user1}:name", "ada")
            pipe.call("INCR", "{user1}:visits")
            pipe.call("GET", "other")
            results = pipe.execute()
    """

    def __init__(self, router: Router, concurrency: int = 5):
        self.router = router
        self.concurrency = concurrency
        self.command_stack: List[PipelineCommand] = []

    def __repr__(self):
        return f"<{type(self).__name__} commands={len(self.command_stack)}>"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.reset()

    def __len__(self):
        return len(self.command_stack)

    def __bool__(self):
        "Pipeline instances should always evaluate to True"
        return True

    def reset(self):
        self.command_stack = []

    def call(self, *args, callback=None) -> "ClusterPipeline":
        return self.call_v(args, callback=callback)

    def call_v(self, args, callback=None) -> "ClusterPipeline":
        return self._append(args, callback)

    # connection errors of a pipeline are never retried
    call_once = call
    call_once_v = call_v

    def blocking_call(self, timeout, *args, callback=None) -> "ClusterPipeline":
        return self.blocking_call_v(timeout, args, callback=callback)

    def blocking_call_v(self, timeout, args, callback=None) -> "ClusterPipeline":
        return self._append(args, callback, timeout=timeout)

    def _append(self, args, callback, timeout=None) -> "ClusterPipeline":
        if not args:
            raise ValueError("A command needs at least its name")
        key = self.router.check_supported(args)
        if key in COMMAND_FLAGS:
            raise AmbiguousNodeError(f"{key} runs on several nodes and can't be pipelined")
        c = PipelineCommand(args, len(self.command_stack), callback, timeout)
        # cross-slot commands fail before anything is sent
        c.slot = slot_of_keys(self.router.get_keys(args))
        c.readonly = self.router.commands_parser.is_readonly(args)
        self.command_stack.append(c)
        return self

    def execute(self, raise_on_error: bool = True) -> List[Any]:
        """
        Send every queued command and return the replies in order.

        With ``raise_on_error`` all commands still run, then an
        ``ErrorCollection`` holding the first error of every failed node is
        raised. Otherwise failed commands have their error in place of a
        reply.
        """
        stack = self.command_stack
        if not stack:
            return []
        try:
            self._send_cluster_commands(stack)
            return self._collect(stack, raise_on_error)
        finally:
            self.reset()

    def _partition(self, stack) -> Dict[str, NodeCommands]:
        nodes: Dict[str, NodeCommands] = {}
        keyless = []
        for c in stack:
            if c.slot is None:
                keyless.append(c)
                continue
            node = self.router.nodes_manager.get_node_from_slot(
                c.slot, replica=c.readonly
            )
            nodes.setdefault(node.name, NodeCommands(node)).append(c)
        if keyless:
            if nodes:
                target = next(iter(nodes.values()))
            else:
                node = self.router.nodes_manager.get_random_primary()
                target = nodes[node.name] = NodeCommands(node)
            for c in keyless:
                target.append(c)
        for node_commands in nodes.values():
            node_commands.commands.sort(key=lambda c: c.position)
        return nodes

    def _send_cluster_commands(self, stack):
        nodes = self._partition(stack)
        logger.debug(
            "Sending a pipeline of %d commands to %d nodes", len(stack), len(nodes)
        )
        if len(nodes) == 1:
            next(iter(nodes.values())).execute()
        else:
            workers = min(self.concurrency, len(nodes))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                for future in [executor.submit(n.execute) for n in nodes.values()]:
                    future.result()

        refresh = False
        for c in stack:
            result = c.result
            if getattr(result, "node", None) is not c.node:
                continue
            if isinstance(result, (MovedError, AskError)):
                # follow the redirect with the command alone
                try:
                    c.result = self.router.execute(
                        c.node, c.args, timeout=c.timeout, redirect=result
                    )
                except ClusterKVError as e:
                    c.result = e
            elif isinstance(result, ConnectionError):
                refresh = True
        if refresh:
            self.router.refresh_quietly()

    @staticmethod
    def _collect(stack, raise_on_error) -> List[Any]:
        response = []
        errors: Dict[str, Exception] = {}
        for c in stack:
            result = c.result
            if isinstance(result, Exception):
                errors.setdefault(c.node.name, result)
            elif c.callback is not None:
                result = c.callback(result)
            response.append(result)
        if errors and raise_on_error:
            raise ErrorCollection(errors)
        return response
