import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from clusterkv.commands import CommandsParser
from clusterkv.crc import slot_of_keys
from clusterkv.exceptions import (
    AmbiguousNodeError,
    AskError,
    ClusterDownError,
    ClusterKVError,
    ConnectionError,
    ErrorCollection,
    MovedError,
    OrchestrationCommandNotSupported,
    TryAgainError,
)
from clusterkv.node import ClusterNode
from clusterkv.retry import Retry
from clusterkv.topology import NodesManager
from clusterkv.utils import (
    all_true_by_index,
    concat_result,
    first_result,
    list_keys_to_dict,
    merge_result,
    safe_str,
    sum_by_key,
    sum_result,
)

logger = logging.getLogger(__name__)

PRIMARIES = "primaries"
SLOT_ID = "slot-id"

TRYAGAIN_BACKOFF = 0.05
CLUSTERDOWN_BACKOFF = 0.25


def dict_merge(*dicts: Dict[str, Any]) -> Dict[str, Any]:
    merged = {}
    for d in dicts:
        merged.update(d)
    return merged


def _flat_pairs(res):
    return [item for pair in sum_by_key(res).items() for item in pair]


def _per_node(res):
    return list(res.values())


COMMAND_FLAGS = dict_merge(
    list_keys_to_dict(
        [
            "FLUSHALL",
            "FLUSHDB",
            "SCRIPT FLUSH",
            "SCRIPT LOAD",
            "SCRIPT EXISTS",
            "FUNCTION DELETE",
            "FUNCTION FLUSH",
            "FUNCTION LOAD",
            "CONFIG SET",
            "CONFIG RESETSTAT",
            "MEMORY PURGE",
            "MEMORY STATS",
            "CLUSTER SAVECONFIG",
            "CLIENT PAUSE",
            "CLIENT UNPAUSE",
            "CLIENT LIST",
            "KEYS",
            "DBSIZE",
            "WAIT",
            "LASTSAVE",
            "ROLE",
            "INFO",
            "PUBSUB CHANNELS",
            "PUBSUB SHARDCHANNELS",
            "PUBSUB NUMPAT",
            "PUBSUB NUMSUB",
            "PUBSUB SHARDNUMSUB",
        ],
        PRIMARIES,
    ),
    list_keys_to_dict(
        ["CLUSTER COUNTKEYSINSLOT", "CLUSTER GETKEYSINSLOT"],
        SLOT_ID,
    ),
)

RESULT_CALLBACKS = dict_merge(
    list_keys_to_dict(
        [
            "FLUSHALL",
            "FLUSHDB",
            "SCRIPT FLUSH",
            "SCRIPT LOAD",
            "FUNCTION DELETE",
            "FUNCTION FLUSH",
            "FUNCTION LOAD",
            "CONFIG SET",
            "CONFIG RESETSTAT",
            "MEMORY PURGE",
            "CLUSTER SAVECONFIG",
            "CLIENT PAUSE",
            "CLIENT UNPAUSE",
        ],
        first_result,
    ),
    list_keys_to_dict(["KEYS"], concat_result),
    list_keys_to_dict(["DBSIZE", "WAIT", "PUBSUB NUMPAT"], sum_result),
    list_keys_to_dict(["SCRIPT EXISTS"], all_true_by_index),
    list_keys_to_dict(["PUBSUB CHANNELS", "PUBSUB SHARDCHANNELS"], merge_result),
    list_keys_to_dict(["PUBSUB NUMSUB", "PUBSUB SHARDNUMSUB"], _flat_pairs),
    list_keys_to_dict(
        ["LASTSAVE", "ROLE", "CLIENT LIST", "MEMORY STATS", "INFO"], _per_node
    ),
)

# administrative commands without a single well-defined target node
NOT_SUPPORTED_COMMANDS = {
    "CLUSTER ADDSLOTS",
    "CLUSTER ADDSLOTSRANGE",
    "CLUSTER BUMPEPOCH",
    "CLUSTER DELSLOTS",
    "CLUSTER DELSLOTSRANGE",
    "CLUSTER FAILOVER",
    "CLUSTER FLUSHSLOTS",
    "CLUSTER FORGET",
    "CLUSTER MEET",
    "CLUSTER REPLICATE",
    "CLUSTER RESET",
    "CLUSTER SET-CONFIG-EPOCH",
    "CLUSTER SETSLOT",
    "READONLY",
    "READWRITE",
    "SHUTDOWN",
}

# only meaningful on the connection of a transaction
TRANSACTION_COMMANDS = {"MULTI", "EXEC", "DISCARD", "UNWATCH"}


def command_key(args: Sequence[Any]) -> str:
    """
    Name of a command as used by the routing tables, including its
    sub-command when the table knows it (e.g. ``"SCRIPT LOAD"``).
    """
    name = safe_str(args[0]).upper()
    if len(args) > 1:
        with_subcommand = f"{name} {safe_str(args[1]).upper()}"
        if (
            with_subcommand in COMMAND_FLAGS
            or with_subcommand in NOT_SUPPORTED_COMMANDS
        ):
            return with_subcommand
    return name


class Router:
    """
    Decides which node serves a command and sends it there, following
    MOVED/ASK redirects and retrying after connection errors.

    Only errors raised by a node this router dispatched the command to are
    acted upon: an error without that provenance (e.g. raised by a
    middleware) is propagated untouched and never changes the topology.
    """

    def __init__(
        self,
        config,
        nodes_manager: NodesManager,
        commands_parser: Optional[CommandsParser] = None,
    ):
        self.config = config
        self.nodes_manager = nodes_manager
        self.commands_parser = commands_parser or nodes_manager.commands_parser
        self.retry = Retry(retries=config.reconnect_attempts)

    def get_keys(self, args: Sequence[Any]) -> List[Any]:
        return self.commands_parser.get_keys(args)

    def determine_slot(self, args: Sequence[Any]) -> Optional[int]:
        return slot_of_keys(self.get_keys(args))

    def resolve(self, keys: Iterable[Any], want_primary: bool = True) -> ClusterNode:
        """
        The node serving all ``keys``: their primary, or a replica picked
        by the affinity policy when ``want_primary`` is false.
        """
        slot = slot_of_keys(list(keys))
        if slot is None:
            raise AmbiguousNodeError("No key to choose a node from")
        return self.nodes_manager.get_node_from_slot(slot, replica=not want_primary)

    def node_for_command(self, args: Sequence[Any]) -> ClusterNode:
        keys = self.get_keys(args)
        if not keys:
            return self.nodes_manager.get_random_primary()
        return self.resolve(
            keys, want_primary=not self.commands_parser.is_readonly(args)
        )

    def check_supported(self, args: Sequence[Any]) -> str:
        key = command_key(args)
        if key in NOT_SUPPORTED_COMMANDS:
            raise OrchestrationCommandNotSupported(key)
        if key in TRANSACTION_COMMANDS:
            raise AmbiguousNodeError(
                f"{key} must be sent within a transaction, use multi() instead"
            )
        return key

    def send_command(
        self, args: Sequence[Any], retries: Optional[int] = None, timeout=None
    ) -> Any:
        """
        Route and send one command, fanning out to every primary for the
        commands that have to run cluster-wide.
        """
        key = self.check_supported(args)
        flag = COMMAND_FLAGS.get(key)
        if flag == PRIMARIES:
            return self.fan_out(
                self.nodes_manager.get_primaries(), args, RESULT_CALLBACKS[key]
            )
        if flag == SLOT_ID:
            slot = int(args[2])
            return self.execute_with_retry(
                lambda: self.nodes_manager.get_node_from_slot(slot),
                args,
                retries=retries,
            )
        return self.execute_with_retry(
            lambda: self.node_for_command(args), args, retries=retries, timeout=timeout
        )

    def execute_with_retry(
        self,
        select_node: Callable[[], ClusterNode],
        args: Sequence[Any],
        retries: Optional[int] = None,
        timeout=None,
    ) -> Any:
        """
        Send ``args`` to the node ``select_node`` returns. After a connection
        error of that node the topology is reloaded and the node selected
        again, up to ``retries`` times.
        """
        dispatched: List[ClusterNode] = []

        def do():
            node = select_node()
            dispatched.append(node)
            return self.execute(node, args, timeout=timeout)

        def is_own_error(error):
            return any(error.node is node for node in dispatched)

        retry = self.retry if retries is None else self.retry.with_retries(retries)
        return retry.call_with_retry(do, self._on_connection_error, is_own_error)

    def _on_connection_error(self, error: ConnectionError):
        logger.debug("Reloading the topology after %r", error)
        self.refresh_quietly()

    def refresh_quietly(self):
        "Reload the topology, keeping the current one if no node answers"
        try:
            self.nodes_manager.full_refresh()
        except ClusterKVError as e:
            logger.warning("Could not reload the topology: %r", e)

    def execute(
        self, node: ClusterNode, args: Sequence[Any], timeout=None, redirect=None
    ) -> Any:
        """
        Send ``args`` to ``node`` and follow the redirects it replies with,
        at most ``max_redirects`` times. ``redirect`` is a redirect ``node``
        already replied with, e.g. inside a pipeline, to follow first.
        """
        asking = False
        redirects = 0
        while True:
            try:
                if redirect is not None:
                    error, redirect = redirect, None
                    raise error
                if asking:
                    return self._send_asking(node, args)
                return node.call(args, timeout=timeout)
            except MovedError as e:
                if e.node is not node:
                    raise
                self._check_redirects(redirects, e)
                self.nodes_manager.update_moved(e)
                node = self.nodes_manager.get_node_from_slot(e.slot_id)
                asking = False
                logger.debug("MOVED %d, following to %s", e.slot_id, node.name)
            except AskError as e:
                if e.node is not node:
                    raise
                self._check_redirects(redirects, e)
                node = self.nodes_manager.node_for_address(e.host, e.port)
                asking = True
                logger.debug("ASK %d, following to %s", e.slot_id, node.name)
            except TryAgainError as e:
                if e.node is not node:
                    raise
                self._check_redirects(redirects, e)
                time.sleep(TRYAGAIN_BACKOFF)
            except ClusterDownError as e:
                if e.node is not node:
                    raise
                self._check_redirects(redirects, e)
                time.sleep(CLUSTERDOWN_BACKOFF)
                self.refresh_quietly()
                node = self._same_role_node(node, args)
            redirects += 1

    def _check_redirects(self, redirects: int, error: ClusterKVError):
        if redirects < self.config.max_redirects:
            return
        if isinstance(error, ClusterDownError):
            raise error
        raise ClusterDownError(
            f"Gave up after {redirects} redirects: {error}", node=error.node
        ) from error

    def _same_role_node(self, node, args) -> ClusterNode:
        slot = self.determine_slot(args)
        if slot is None:
            return self.nodes_manager.get_random_primary()
        return self.nodes_manager.get_node_from_slot(slot)

    @staticmethod
    def _send_asking(node: ClusterNode, args):
        # ASKING only applies to the next command on the same connection
        asking_reply, reply = node.call_pipelined([("ASKING",), args])
        if isinstance(asking_reply, Exception):
            raise asking_reply
        if isinstance(reply, Exception):
            raise reply
        return reply

    def fan_out(
        self,
        nodes: Sequence[ClusterNode],
        args: Sequence[Any],
        aggregate: Callable[[Dict[str, Any]], Any],
    ) -> Any:
        """
        Send ``args`` to each of ``nodes`` and aggregate the replies, keyed
        by node name. Failures of single nodes are raised together once
        every node was tried.
        """
        results: Dict[str, Any] = {}
        errors: Dict[str, Exception] = {}
        for node in nodes:
            try:
                results[node.name] = self.execute(node, args)
            except ClusterKVError as e:
                errors[node.name] = e
        if errors:
            raise ErrorCollection(errors)
        return aggregate(results)
