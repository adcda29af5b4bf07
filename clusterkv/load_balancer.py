import random
from enum import Enum
from typing import Callable, Optional, Sequence


class ReplicaAffinity(Enum):
    RANDOM = "random"
    RANDOM_WITH_PRIMARY = "random_with_primary"
    LATENCY = "latency"

    @classmethod
    def coerce(cls, value) -> Optional["ReplicaAffinity"]:
        if value is None or isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown replica affinity {value!r}, expected one of "
                f"{[member.value for member in cls]}"
            ) from None


class ReplicaSelector:
    """
    Picks the node that serves a read for a slot, given the slot's primary
    and its replicas. The selection never changes the topology.
    """

    def __init__(
        self,
        affinity: Optional[ReplicaAffinity],
        latency_of: Optional[Callable[[str], float]] = None,
    ) -> None:
        self.affinity = affinity
        self._latency_of = latency_of
        self._pick = {
            None: self._pick_primary,
            ReplicaAffinity.RANDOM: self._pick_random,
            ReplicaAffinity.RANDOM_WITH_PRIMARY: self._pick_random_with_primary,
            ReplicaAffinity.LATENCY: self._pick_lowest_latency,
        }[affinity]

    def pick_replica(self, primary: str, replicas: Sequence[str]) -> str:
        if not replicas:
            return primary
        return self._pick(primary, replicas)

    def _pick_primary(self, primary, replicas):
        return primary

    def _pick_random(self, primary, replicas):
        return random.choice(replicas)

    def _pick_random_with_primary(self, primary, replicas):
        return random.choice([primary, *replicas])

    def _pick_lowest_latency(self, primary, replicas):
        latencies = {}
        if self._latency_of is not None:
            for replica in replicas:
                latency = self._latency_of(replica)
                if latency is not None:
                    latencies[replica] = latency
        if not latencies:
            return self._pick_random(primary, replicas)
        return min(latencies, key=latencies.get)
