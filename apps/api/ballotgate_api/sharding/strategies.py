"""Placement strategies mapping (election, voter) keys to partitions."""

import bisect
import hashlib
from abc import ABC, abstractmethod
from typing import Iterable, Mapping, Optional, Sequence

from ballotgate_api.settings import Settings


def stable_hash(value: str) -> int:
    """64-bit hash that is identical across processes and restarts."""
    return int.from_bytes(hashlib.sha256(value.encode()).digest()[:8], "big")


class PlacementStrategy(ABC):
    """Abstract placement policy."""

    name = "abstract"

    @property
    @abstractmethod
    def partitions(self) -> tuple[str, ...]:
        """All partitions this strategy may place keys on."""
        pass

    @abstractmethod
    def place(self, election_id: str, voting_id: str) -> str:
        """Return the partition that owns the key."""
        pass

    def describe(self) -> dict:
        return {"strategy": self.name, "partitions": list(self.partitions)}


class SinglePartitionStrategy(PlacementStrategy):
    """Every key lives on one partition."""

    name = "single"

    def __init__(self, partition_id: str):
        self.partition_id = partition_id

    @property
    def partitions(self) -> tuple[str, ...]:
        return (self.partition_id,)

    def place(self, election_id: str, voting_id: str) -> str:
        return self.partition_id


class HashRing:
    """Consistent hash ring with virtual nodes."""

    def __init__(self, partitions: Iterable[str], virtual_nodes: int = 64):
        self.partitions = tuple(sorted(set(partitions)))
        if not self.partitions:
            raise ValueError("Hash ring needs at least one partition")
        self.virtual_nodes = virtual_nodes
        points = []
        for partition_id in self.partitions:
            for replica in range(virtual_nodes):
                points.append((stable_hash(f"{partition_id}#{replica}"), partition_id))
        points.sort()
        self._hashes = [point for point, _ in points]
        self._owners = [owner for _, owner in points]

    def lookup(self, key: str) -> str:
        index = bisect.bisect_right(self._hashes, stable_hash(key))
        if index == len(self._hashes):
            index = 0
        return self._owners[index]


class ConsistentHashStrategy(PlacementStrategy):
    """Keys placed on a hash ring keyed on the voting identifier."""

    name = "consistent_hash"

    def __init__(self, partitions: Sequence[str], virtual_nodes: int = 64):
        self.ring = HashRing(partitions, virtual_nodes)

    @property
    def partitions(self) -> tuple[str, ...]:
        return self.ring.partitions

    def place(self, election_id: str, voting_id: str) -> str:
        return self.ring.lookup(voting_id)

    def describe(self) -> dict:
        info = super().describe()
        info["virtual_nodes"] = self.ring.virtual_nodes
        return info


class ElectionScopedStrategy(PlacementStrategy):
    """Each election owns a subset of partitions; voters are hashed within it.

    Elections without an explicit assignment use ``default_partitions``.
    """

    name = "election_scoped"

    def __init__(
        self,
        election_partitions: Mapping[str, Sequence[str]],
        default_partitions: Sequence[str],
        virtual_nodes: int = 64,
    ):
        self.virtual_nodes = virtual_nodes
        self.default_ring = HashRing(default_partitions, virtual_nodes)
        self.election_rings = {
            election_id: HashRing(owned, virtual_nodes)
            for election_id, owned in election_partitions.items()
        }

    @property
    def partitions(self) -> tuple[str, ...]:
        owned = set(self.default_ring.partitions)
        for ring in self.election_rings.values():
            owned.update(ring.partitions)
        return tuple(sorted(owned))

    def place(self, election_id: str, voting_id: str) -> str:
        ring = self.election_rings.get(election_id, self.default_ring)
        return ring.lookup(voting_id)

    def describe(self) -> dict:
        info = super().describe()
        info["default_partitions"] = list(self.default_ring.partitions)
        info["virtual_nodes"] = self.virtual_nodes
        info["election_partitions"] = {
            election_id: list(ring.partitions) for election_id, ring in self.election_rings.items()
        }
        return info


def build_strategy(settings: Settings, partitions: Optional[Sequence[str]] = None) -> PlacementStrategy:
    """Build the placement strategy selected by deployment configuration."""
    partition_ids = sorted(partitions if partitions is not None else settings.shard_partitions)
    if not partition_ids:
        raise ValueError("At least one partition must be configured")

    strategy = settings.shard_strategy.lower()
    if strategy == "single":
        if len(partition_ids) != 1:
            raise ValueError(f"single strategy needs exactly one partition, got {partition_ids}")
        return SinglePartitionStrategy(partition_ids[0])
    if strategy == "consistent_hash":
        return ConsistentHashStrategy(partition_ids, settings.shard_virtual_nodes)
    if strategy == "election_scoped":
        for election_id, owned in settings.election_partitions.items():
            unknown = set(owned) - set(partition_ids)
            if unknown:
                raise ValueError(f"Election {election_id} assigned to unknown partitions {sorted(unknown)}")
        return ElectionScopedStrategy(
            settings.election_partitions,
            partition_ids,
            settings.shard_virtual_nodes,
        )
    raise ValueError(f"Unknown shard strategy: {settings.shard_strategy}")


def strategy_from_description(description: Mapping) -> PlacementStrategy:
    """Rebuild a strategy from the output of its ``describe()``."""
    name = description.get("strategy")
    partitions = list(description.get("partitions") or [])
    if name == SinglePartitionStrategy.name:
        if len(partitions) != 1:
            raise ValueError(f"single strategy needs exactly one partition, got {partitions}")
        return SinglePartitionStrategy(partitions[0])
    if name == ConsistentHashStrategy.name:
        return ConsistentHashStrategy(partitions, description.get("virtual_nodes", 64))
    if name == ElectionScopedStrategy.name:
        return ElectionScopedStrategy(
            description.get("election_partitions") or {},
            description.get("default_partitions") or partitions,
            description.get("virtual_nodes", 64),
        )
    raise ValueError(f"Unknown shard strategy: {name}")
