import logging
import random
import threading
from typing import Dict, List, Optional, Sequence

from clusterkv.commands import CommandsParser
from clusterkv.crc import CLUSTER_HASH_SLOTS, key_slot
from clusterkv.exceptions import (
    ClusterDownError,
    ClusterKVError,
    CommandError,
    InitialSetupError,
)
from clusterkv.load_balancer import ReplicaAffinity, ReplicaSelector
from clusterkv.node import PRIMARY, REPLICA, ClusterNode, get_node_name
from clusterkv.utils import str_if_bytes

logger = logging.getLogger(__name__)


class Topology:
    """
    Immutable snapshot of the slot assignment.

    ``slots`` holds the name of the primary of every slot (``None`` for a
    slot no node serves), ``replicas`` the replica names of every primary and
    ``nodes`` the node object of every name. A new snapshot is built for
    every change, readers never see a partial update.
    """

    __slots__ = ("slots", "replicas", "nodes", "latencies", "primaries")

    def __init__(self, slots, replicas, nodes, latencies=None):
        self.slots: Sequence[Optional[str]] = slots
        self.replicas: Dict[str, List[str]] = replicas
        self.nodes: Dict[str, ClusterNode] = nodes
        self.latencies: Dict[str, float] = latencies or {}
        # stable order used by fan-out commands and SCAN
        self.primaries: List[str] = sorted({name for name in slots if name})

    def __eq__(self, other):
        if not isinstance(other, Topology):
            return NotImplemented
        return list(self.slots) == list(other.slots) and self.replicas == other.replicas

    def __repr__(self):
        return f"<Topology primaries={self.primaries} replicas={self.replicas}>"

    def with_slot(self, slot: int, primary: str, nodes: Dict[str, ClusterNode]):
        "A copy of this snapshot where ``slot`` belongs to ``primary``"
        slots = list(self.slots)
        slots[slot] = primary
        replicas = dict(self.replicas)
        replicas.setdefault(primary, [])
        return Topology(slots, replicas, nodes, self.latencies)


class NodesManager:
    """
    Owns the topology and the node objects. Every operation reads
    ``topology`` once and works on that snapshot; refreshes and MOVED patches
    install a new snapshot under a lock.
    """

    def __init__(self, config, commands_parser: Optional[CommandsParser] = None):
        self.config = config
        self.commands_parser = commands_parser or CommandsParser()
        self.topology: Optional[Topology] = None
        self.nodes_cache: Dict[str, ClusterNode] = {}
        self.moved_count = 0
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        affinity = config.replica_affinity if config.use_replica else None
        self.replica_selector = ReplicaSelector(affinity, latency_of=self._latency_of)

    def _latency_of(self, name):
        topology = self.topology
        return topology.latencies.get(name) if topology is not None else None

    def get_topology(self) -> Topology:
        "The current snapshot, loading it first if the client never did"
        topology = self.topology
        if topology is None:
            with self._refresh_lock:
                topology = self.topology or self._full_refresh()
        return topology

    @property
    def node_keys(self) -> List[str]:
        return sorted(self.get_topology().nodes)

    def get_node(self, name: str) -> Optional[ClusterNode]:
        return self.get_topology().nodes.get(name)

    def get_node_from_slot(self, slot: int, replica: bool = False) -> ClusterNode:
        topology = self.get_topology()
        primary = topology.slots[slot]
        if primary is None:
            raise ClusterDownError(f"Slot {slot} is not served by any node")
        name = primary
        if replica and self.config.use_replica:
            name = self.replica_selector.pick_replica(
                primary, topology.replicas.get(primary, ())
            )
        return topology.nodes[name]

    def find_node_key_by_key(self, key, primary: bool = True) -> str:
        return self.get_node_from_slot(key_slot(key), replica=not primary).name

    def get_primaries(self) -> List[ClusterNode]:
        topology = self.get_topology()
        return [topology.nodes[name] for name in topology.primaries]

    def get_random_primary(self) -> ClusterNode:
        primaries = self.get_primaries()
        if not primaries:
            raise ClusterDownError("No primary node is serving slots")
        return random.choice(primaries)

    def _get_or_create_node(self, host, port, server_type, nodes, known=None):
        name = get_node_name(host, port)
        known = self.nodes_cache if known is None else known
        node = nodes.get(name) or known.get(name)
        if node is None:
            node = ClusterNode(host, port, self.config, server_type=server_type)
        elif nodes.get(name) is None:
            node.server_type = server_type
        nodes[name] = node
        return node

    def _node_from_reply(self, info, queried: ClusterNode, server_type, nodes, known):
        # an empty host means the host of the node that answered
        host = str_if_bytes(info[0]) or queried.host
        host, port = self.config.remap_host_port(host, int(info[1]))
        return self._get_or_create_node(host, port, server_type, nodes, known)

    def _candidates(self) -> List[ClusterNode]:
        startup = [
            (node["host"], node["port"]) for node in self.config.startup_nodes
        ]
        random.shuffle(startup)
        discovered = [
            (node.host, node.port)
            for node in self.nodes_cache.values()
            if (node.host, node.port) not in startup
        ]
        random.shuffle(discovered)
        return [
            self.nodes_cache.get(get_node_name(host, port))
            or ClusterNode(host, port, self.config)
            for host, port in startup + discovered
        ]

    def full_refresh(self) -> Topology:
        """
        Load the slot assignment of the first node that answers
        ``CLUSTER SLOTS`` and install it. Node objects that are still part of
        the cluster are kept, the others are disconnected.
        """
        with self._refresh_lock:
            return self._full_refresh()

    def _full_refresh(self) -> Topology:
        errors = {}
        reply = queried = None
        candidates = self._candidates()
        for node in candidates:
            try:
                reply = node.call(("CLUSTER", "SLOTS"))
            except ClusterKVError as e:
                logger.warning("Could not load the topology from %s: %r", node.name, e)
                errors[node.name] = e
                continue
            queried = node
            break

        if queried is None:
            self._close_unused(candidates, self.nodes_cache)
            names = ", ".join(node.name for node in candidates)
            if self.topology is None:
                raise InitialSetupError(
                    f"Could not load the cluster topology from any of {names}", errors
                )
            raise ClusterDownError(f"Could not refresh the cluster topology from {names}")

        # startup nodes are reused when the cluster reports them
        known = {node.name: node for node in candidates}
        known.update(self.nodes_cache)
        nodes: Dict[str, ClusterNode] = {}
        slots: List[Optional[str]] = [None] * CLUSTER_HASH_SLOTS
        replicas: Dict[str, List[str]] = {}
        for slot_range in reply:
            start, end = int(slot_range[0]), int(slot_range[1])
            primary = self._node_from_reply(
                slot_range[2], queried, PRIMARY, nodes, known
            )
            primary_replicas = replicas.setdefault(primary.name, [])
            for replica_info in slot_range[3:]:
                replica = self._node_from_reply(
                    replica_info, queried, REPLICA, nodes, known
                )
                if replica.name not in primary_replicas:
                    primary_replicas.append(replica.name)
            slots[start : end + 1] = [primary.name] * (end - start + 1)

        uncovered = slots.count(None)
        if uncovered:
            logger.warning("%d slots are not served by any node", uncovered)

        latencies = self._sample_latencies(nodes, replicas)
        self._load_commands(queried)
        topology = Topology(slots, replicas, nodes, latencies)

        with self._lock:
            previous = self.nodes_cache
            self.nodes_cache = nodes
            self.topology = topology
            self.moved_count = 0
        self._close_unused(list(previous.values()) + candidates, nodes)
        logger.info(
            "Loaded cluster topology from %s: %d nodes, %d primaries",
            queried.name,
            len(nodes),
            len(topology.primaries),
        )
        return topology

    @staticmethod
    def _close_unused(nodes, keep):
        for node in {id(node): node for node in nodes}.values():
            if keep.get(node.name) is not node:
                node.disconnect()

    def _sample_latencies(self, nodes, replicas) -> Dict[str, float]:
        if not self.config.use_replica:
            return {}
        if self.config.replica_affinity is not ReplicaAffinity.LATENCY:
            return {}
        return {
            name: nodes[name].measure_latency()
            for names in replicas.values()
            for name in names
        }

    def _load_commands(self, node: ClusterNode):
        if self.commands_parser.loaded_from_server:
            return
        try:
            self.commands_parser.load(node.call(("COMMAND",)))
        except CommandError as e:
            logger.debug("COMMAND is not available on %s: %r", node.name, e)

    def node_for_address(self, host, port) -> ClusterNode:
        """
        The node at an address a redirect pointed to. Unknown nodes are
        created without changing the slot assignment.
        """
        host, port = self.config.remap_host_port(host, port)
        name = get_node_name(host, port)
        node = self.get_topology().nodes.get(name)
        if node is not None:
            return node
        with self._lock:
            nodes = dict(self.nodes_cache)
            node = self._get_or_create_node(host, port, PRIMARY, nodes)
            self.nodes_cache = nodes
        return node

    def update_moved(self, error) -> None:
        """
        Point the slot of a MOVED reply at its new owner, or reload the whole
        topology once ``refresh_after_redirects`` MOVED replies were seen.
        """
        host, port = self.config.remap_host_port(error.host, error.port)
        with self._lock:
            self.moved_count += 1
            refresh = self.moved_count >= self.config.refresh_after_redirects
            if not refresh:
                nodes = dict(self.nodes_cache)
                node = self._get_or_create_node(host, port, PRIMARY, nodes)
                node.server_type = PRIMARY
                self.nodes_cache = nodes
                self.topology = self.topology.with_slot(error.slot_id, node.name, nodes)
                logger.debug("Slot %d moved to %s", error.slot_id, node.name)
        if refresh:
            self.full_refresh()

    def close(self):
        with self._lock:
            nodes = list(self.nodes_cache.values())
            self.nodes_cache = {}
            self.topology = None
        for node in nodes:
            node.disconnect()
