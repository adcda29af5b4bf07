import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from redis import exceptions as redis_exceptions

from clusterkv.crc import key_slot
from clusterkv.node import ClusterNode, translate_error
from clusterkv.router import Router
from clusterkv.utils import safe_str

logger = logging.getLogger(__name__)

SHARDED_COMMANDS = {"SSUBSCRIBE", "SUNSUBSCRIBE"}
UNSUBSCRIBE_COMMANDS = {"UNSUBSCRIBE", "PUNSUBSCRIBE", "SUNSUBSCRIBE"}
POLL_INTERVAL = 0.01


class NodeSubscription:
    "A dedicated connection to one node, in subscribed mode"

    def __init__(self, node: ClusterNode):
        self.node = node
        try:
            self.connection = node.connection_pool.get_connection()
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=node) from e

    def __repr__(self):
        return f"<{type(self).__name__} {self.node.name}>"

    def send(self, args: Sequence[Any]) -> None:
        # the reply is read by next_event, it may come after pending messages
        try:
            self.connection.send_command(*args)
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=self.node) from e

    def read(self, timeout: Optional[float]) -> Optional[Any]:
        """
        The next message or confirmation, ``None`` if nothing arrived within
        ``timeout`` seconds. ``None`` waits for as long as it takes.
        """
        try:
            if not self.connection.can_read(timeout):
                return None
            return self.connection.read_response()
        except redis_exceptions.RedisError as e:
            raise translate_error(e, node=self.node) from e

    def close(self) -> None:
        self.connection.disconnect()
        self.node.connection_pool.release(self.connection)


class ClusterPubSub:
    """
    Subscriptions to a cluster.

    Channels and patterns subscribed with SUBSCRIBE/PSUBSCRIBE share one
    connection to a node chosen on first use. Sharded channels subscribed
    with SSUBSCRIBE use one connection per node serving their slots.

    ``call`` never returns a reply: replies, messages and errors are read in
    order with ``next_event``.
    """

    def __init__(self, router: Router):
        self.router = router
        self.global_subscription: Optional[NodeSubscription] = None
        self.sharded_subscriptions: Dict[str, NodeSubscription] = {}
        self._next_index = 0

    def __repr__(self):
        return (
            f"<{type(self).__name__} global={self.global_subscription} "
            f"sharded={list(self.sharded_subscriptions)}>"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def subscriptions(self) -> List[NodeSubscription]:
        subscriptions = list(self.sharded_subscriptions.values())
        if self.global_subscription is not None:
            subscriptions.insert(0, self.global_subscription)
        return subscriptions

    def call(self, *args) -> None:
        return self.call_v(args)

    def call_v(self, args: Sequence[Any]) -> None:
        if not args:
            raise ValueError("A command needs at least its name")
        name = safe_str(args[0]).upper()
        channels = list(args[1:])
        if name in SHARDED_COMMANDS:
            self._call_sharded(name, args, channels)
            return None

        if self.global_subscription is None:
            if name in UNSUBSCRIBE_COMMANDS:
                return None
            self.global_subscription = NodeSubscription(self._global_node(channels))
        self.global_subscription.send(args)
        return None

    def _global_node(self, channels) -> ClusterNode:
        nodes_manager = self.router.nodes_manager
        if channels:
            return nodes_manager.get_node_from_slot(key_slot(channels[0]))
        return nodes_manager.get_random_primary()

    def _call_sharded(self, name, args, channels):
        if not channels:
            if self.sharded_subscriptions:
                for subscription in self.sharded_subscriptions.values():
                    subscription.send(args)
            elif name not in UNSUBSCRIBE_COMMANDS:
                # let the node reply with the error
                node = self.router.nodes_manager.get_random_primary()
                self._sharded_subscription(node).send(args)
            return

        by_node: Dict[str, Dict[int, List[Any]]] = {}
        nodes: Dict[str, ClusterNode] = {}
        for channel in channels:
            slot = key_slot(channel)
            node = self.router.nodes_manager.get_node_from_slot(slot)
            nodes[node.name] = node
            by_node.setdefault(node.name, {}).setdefault(slot, []).append(channel)
        for node_name, by_slot in by_node.items():
            if name in UNSUBSCRIBE_COMMANDS and node_name not in self.sharded_subscriptions:
                continue
            subscription = self._sharded_subscription(nodes[node_name])
            # the channels of one command must share a slot
            for slot_channels in by_slot.values():
                subscription.send((args[0], *slot_channels))

    def _sharded_subscription(self, node: ClusterNode) -> NodeSubscription:
        subscription = self.sharded_subscriptions.get(node.name)
        if subscription is None:
            subscription = self.sharded_subscriptions[node.name] = NodeSubscription(node)
        return subscription

    def next_event(self, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Wait for the next message, confirmation or error reply of any
        subscription, at most ``timeout`` seconds (``None`` waits forever).
        Returns ``None`` on timeout, or at once when nothing is subscribed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            subscriptions = self.subscriptions
            if not subscriptions:
                return None
            if len(subscriptions) == 1:
                subscription = subscriptions[0]
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                return self._handle(subscription, subscription.read(remaining))

            # round robin, so a busy node doesn't starve the others
            self._next_index = (self._next_index + 1) % len(subscriptions)
            ordered = subscriptions[self._next_index :] + subscriptions[: self._next_index]
            for subscription in ordered:
                event = subscription.read(0)
                if event is not None:
                    return self._handle(subscription, event)

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                time.sleep(min(POLL_INTERVAL, remaining))
            else:
                time.sleep(POLL_INTERVAL)

    def _handle(self, subscription: NodeSubscription, event):
        "Close a connection once the node confirms it has no subscription left"
        if (
            isinstance(event, list)
            and len(event) == 3
            and safe_str(event[0]).upper() in UNSUBSCRIBE_COMMANDS
            and event[2] == 0
        ):
            self._release(subscription)
        return event

    def _release(self, subscription: NodeSubscription):
        subscription.close()
        if subscription is self.global_subscription:
            self.global_subscription = None
        else:
            self.sharded_subscriptions.pop(subscription.node.name, None)
        logger.debug("Closed the subscription connection to %s", subscription.node.name)

    def close(self) -> None:
        for subscription in self.subscriptions:
            subscription.close()
        self.global_subscription = None
        self.sharded_subscriptions = {}
