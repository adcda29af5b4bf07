import logging
from typing import Any, Callable, Iterable, List, Optional

from clusterkv.crc import slot_of_keys
from clusterkv.exceptions import (
    AskError,
    ClusterDownError,
    ConnectionError,
    ConsistencyError,
    MovedError,
    TransportError,
)
from clusterkv.node import ClusterNode, translate_error
from clusterkv.pipeline import PipelineCommand
from clusterkv.router import Router

logger = logging.getLogger(__name__)

# EXEC replied nil, a watched key was modified
WATCH_BROKEN = object()


class Transaction:
    """
    Collects the commands of a transaction block. All of them, and the
    watched keys, must map to one slot.
    """

    def __init__(self, router: Router, slot: Optional[int] = None):
        self.router = router
        self.slot = slot
        self.commands: List[PipelineCommand] = []

    def __len__(self):
        return len(self.commands)

    def call(self, *args, callback=None) -> "Transaction":
        return self.call_v(args, callback=callback)

    def call_v(self, args, callback=None) -> "Transaction":
        if not args:
            raise ValueError("A command needs at least its name")
        self.router.check_supported(args)
        slot = slot_of_keys(self.router.get_keys(args))
        if slot is not None:
            if self.slot is None:
                self.slot = slot
            elif slot != self.slot:
                raise ConsistencyError(
                    f"{args[0]!r} touches slot {slot} but the transaction "
                    f"is bound to slot {self.slot}"
                )
        self.commands.append(PipelineCommand(args, len(self.commands), callback))
        return self

    call_once = call
    call_once_v = call_v


class ReconnectGuard:
    """
    Fails any reconnect of the connection a WATCH was sent on: a new
    connection does not carry the watch, the transaction can't go on.
    """

    def __init__(self, node: ClusterNode):
        self.node = node

    def on_connect(self, connection):
        raise ConnectionError(
            f"Connection to {self.node.name} was lost after WATCH", node=self.node
        )


class Redirect(Exception):
    "Internal signal to re-run a transaction attempt on another node"

    def __init__(self, error):
        super().__init__(str(error))
        self.error = error


class TransactionExecutor:
    """
    Runs a transaction block: WATCH (when keys are given), MULTI, the queued
    commands and EXEC on one connection of the node serving their slot.

    A nil EXEC reply re-runs the whole block, up to ``watch_retry_attempts``
    times. A lost connection is raised at once: sending the commands again on
    a new connection would commit them without the watch.
    """

    def __init__(self, router: Router, config):
        self.router = router
        self.config = config

    def execute(
        self,
        func: Callable[[Transaction], Any],
        watch: Optional[Iterable[Any]] = None,
        raise_on_error: bool = True,
    ) -> Optional[List[Any]]:
        watch = list(watch) if watch else None
        attempts = 0
        redirects = 0
        target = None
        asking = False
        while True:
            try:
                result = self._attempt(func, watch, raise_on_error, target, asking)
            except Redirect as signal:
                error = signal.error
                redirects += 1
                if redirects > self.config.max_redirects:
                    raise ClusterDownError(
                        f"Gave up after {redirects - 1} redirects: {error}",
                        node=error.node,
                    ) from error
                if isinstance(error, MovedError):
                    self.router.nodes_manager.update_moved(error)
                    target, asking = None, False
                else:
                    target = self.router.nodes_manager.node_for_address(
                        error.host, error.port
                    )
                    asking = True
                logger.debug("Transaction redirected by %s, running it again", error)
                continue
            if result is not WATCH_BROKEN:
                return result
            attempts += 1
            if attempts > self.config.watch_retry_attempts:
                logger.warning(
                    "Watched keys %r kept changing, giving up after %d attempts",
                    watch,
                    attempts,
                )
                return None
            logger.debug("Watched keys %r changed, retrying the transaction", watch)

    def _attempt(self, func, watch, raise_on_error, target, asking):
        if watch is None:
            tx = Transaction(self.router)
            func(tx)
            if not tx.commands:
                return []
            if tx.slot is None:
                raise ConsistencyError(
                    "A transaction needs at least one key to choose its node"
                )
            node = target or self.router.nodes_manager.get_node_from_slot(tx.slot)
            with node.acquire() as connection:
                try:
                    return self._exec(node, connection, tx.commands, raise_on_error, asking)
                except TransportError:
                    connection.disconnect()
                    raise

        slot = slot_of_keys(watch)
        node = target or self.router.nodes_manager.get_node_from_slot(slot)
        guard = ReconnectGuard(node)
        with node.acquire() as connection:
            try:
                self._watch(node, connection, watch, asking)
                connection.register_connect_callback(guard.on_connect)
                tx = Transaction(self.router, slot)
                try:
                    func(tx)
                except BaseException:
                    self._unwatch(node, connection)
                    raise
                return self._exec(node, connection, tx.commands, raise_on_error, asking)
            except TransportError:
                connection.disconnect()
                raise
            finally:
                connection.deregister_connect_callback(guard.on_connect)

    def _watch(self, node, connection, keys, asking):
        try:
            if asking:
                for reply in node.call_pipelined(
                    [("ASKING",), ("WATCH", *keys)], connection=connection
                ):
                    if isinstance(reply, Exception):
                        raise reply
            else:
                node.call(("WATCH", *keys), connection=connection)
        except (MovedError, AskError) as e:
            if e.node is not node:
                raise
            raise Redirect(e) from e

    @staticmethod
    def _unwatch(node, connection):
        try:
            node.call(("UNWATCH",), connection=connection)
        except TransportError as e:
            logger.debug("Could not send UNWATCH to %s: %r", node.name, e)

    def _exec(self, node, connection, commands, raise_on_error, asking):
        batch = [("MULTI",), *(c.args for c in commands), ("EXEC",)]
        if asking:
            batch.insert(0, ("ASKING",))
        replies = node.call_pipelined(batch, connection=connection)
        if asking:
            replies = replies[1:]
        multi_reply, queued, exec_reply = replies[0], replies[1:-1], replies[-1]
        if isinstance(multi_reply, Exception):
            raise multi_reply

        if isinstance(exec_reply, Exception):
            # EXECABORT, the error a command was queued with explains it
            queuing_errors = [r for r in queued if isinstance(r, Exception)]
            for error in queuing_errors:
                if isinstance(error, (MovedError, AskError)) and error.node is node:
                    raise Redirect(error)
            raise queuing_errors[0] if queuing_errors else exec_reply

        if exec_reply is None:
            return WATCH_BROKEN

        results = []
        first_error = None
        for c, reply in zip(commands, exec_reply):
            if isinstance(reply, Exception):
                reply = translate_error(reply, node=node)
                first_error = first_error or reply
            elif c.callback is not None:
                reply = c.callback(reply)
            results.append(reply)
        if first_error is not None and raise_on_error:
            raise first_error
        return results
