"""Shard router: deterministic key placement over a versioned topology.

``route`` is a pure function of the current topology snapshot. Writes are
guarded by ``lease``, which fails closed when a route was computed against a
superseded topology or when the key is moving in a pending transition. Leases
are counted per epoch so a rebalance can wait for every write that started
before its transition began.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping, Optional

from ballotgate_api.errors import ShardUnavailable, StaleRouteError
from ballotgate_api.settings import get_settings
from ballotgate_api.sharding.strategies import PlacementStrategy, build_strategy
from ballotgate_api.sharding.topology_store import TopologyStore
from ballotgate_api.utils.metrics import topology_version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topology:
    """Immutable topology snapshot."""

    version: int
    strategy: PlacementStrategy

    @property
    def partitions(self) -> tuple[str, ...]:
        return self.strategy.partitions


@dataclass(frozen=True)
class Route:
    """Placement of one key under one topology version."""

    election_id: str
    voting_id: str
    partition_id: str
    topology_version: int


TopologyListener = Callable[[Topology, Topology], None]


class ShardRouter:
    """Routes (election, voter) keys to partitions."""

    def __init__(
        self,
        strategy: PlacementStrategy,
        version: int = 1,
        store: Optional[TopologyStore] = None,
    ):
        self._store = store
        self._condition = threading.Condition()
        self._current = Topology(version, strategy)
        self._pending: Optional[Topology] = None
        self._epoch = 0
        self._inflight: dict[int, int] = {}
        self._listeners: list[TopologyListener] = []
        topology_version.set(version)

    @property
    def topology(self) -> Topology:
        return self._current

    @property
    def pending(self) -> Optional[Topology]:
        return self._pending

    def route(self, election_id: str, voting_id: str) -> Route:
        """Place a key on the current topology."""
        topology = self._current
        return Route(
            election_id=election_id,
            voting_id=voting_id,
            partition_id=topology.strategy.place(election_id, voting_id),
            topology_version=topology.version,
        )

    def is_moving(self, election_id: str, voting_id: str) -> bool:
        """Whether a pending transition changes the key's owner."""
        pending = self._pending
        if pending is None:
            return False
        current_owner = self._current.strategy.place(election_id, voting_id)
        return pending.strategy.place(election_id, voting_id) != current_owner

    @contextmanager
    def lease(self, route: Route) -> Iterator[Route]:
        """Guard a write against ``route``.

        Raises StaleRouteError if the topology changed since the route was
        computed and ShardUnavailable if the key is being relocated.
        """
        with self._condition:
            if route.topology_version != self._current.version:
                raise StaleRouteError(route.topology_version, self._current.version)
            if self._pending is not None:
                new_owner = self._pending.strategy.place(route.election_id, route.voting_id)
                if new_owner != route.partition_id:
                    raise ShardUnavailable(
                        "Ballot storage for this voter is being rebalanced. Retry shortly."
                    )
            epoch = self._epoch
            self._inflight[epoch] = self._inflight.get(epoch, 0) + 1
        try:
            yield route
        finally:
            with self._condition:
                self._inflight[epoch] -= 1
                if self._inflight[epoch] == 0:
                    del self._inflight[epoch]
                self._condition.notify_all()

    def inflight(self) -> int:
        with self._condition:
            return sum(self._inflight.values())

    def begin_transition(self, strategy: PlacementStrategy) -> Topology:
        """Stage a new topology. Writes for keys it moves are refused from now on."""
        with self._condition:
            if self._pending is not None:
                raise RuntimeError("A topology transition is already in progress")
            self._pending = Topology(self._current.version + 1, strategy)
            self._epoch += 1
            logger.info(
                f"Topology transition v{self._current.version} -> v{self._pending.version} started",
                extra={"partitions": list(strategy.partitions)},
            )
            return self._pending

    def wait_for_drain(self, timeout_seconds: float) -> bool:
        """Wait until every lease taken before the transition began is released."""
        deadline = time.monotonic() + timeout_seconds
        with self._condition:
            target_epoch = self._epoch
            while any(epoch < target_epoch for epoch in self._inflight):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True

    def commit_transition(self, partition_urls: Optional[Mapping[str, str]] = None) -> Topology:
        """Persist the pending topology, make it current and notify listeners.

        With a store attached the topology only becomes current once it is
        recorded, so a restart never falls back to an older placement.
        """
        pending = self._pending
        if pending is None:
            raise RuntimeError("No topology transition in progress")
        if self._store is not None:
            if partition_urls is None:
                raise RuntimeError("Partition URLs are required to persist a topology")
            self._store.save(pending.version, pending.strategy, partition_urls)

        with self._condition:
            if self._pending is not pending:
                raise RuntimeError("Topology transition was aborted while committing")
            previous = self._current
            self._current = self._pending
            self._pending = None
            current = self._current
        topology_version.set(current.version)
        logger.info(f"Topology v{current.version} committed")
        self._notify(previous, current)
        return current

    def abort_transition(self) -> None:
        with self._condition:
            if self._pending is not None:
                logger.warning(f"Topology transition to v{self._pending.version} aborted")
            self._pending = None

    def subscribe(self, listener: TopologyListener) -> None:
        """Register a callback invoked with (previous, current) after each commit."""
        self._listeners.append(listener)

    def _notify(self, previous: Topology, current: Topology) -> None:
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception as e:
                logger.warning(f"Topology listener failed: {e}", exc_info=True)

    def describe(self) -> dict:
        topology = self._current
        pending = self._pending
        return {
            "version": topology.version,
            **topology.strategy.describe(),
            "pending": (
                {"version": pending.version, **pending.strategy.describe()} if pending else None
            ),
            "inflight_writes": self.inflight(),
        }


# Global instance
_router: Optional[ShardRouter] = None


def get_router() -> ShardRouter:
    """Get or create the shard router.

    Starts from the latest committed topology; settings only describe the
    topology used before the first rebalance.
    """
    global _router
    if _router is None:
        from ballotgate_api.db.session import SessionLocal

        store = TopologyStore(SessionLocal)
        persisted = store.load_latest()
        if persisted is None:
            _router = ShardRouter(build_strategy(get_settings()), store=store)
        else:
            logger.info(f"Loaded committed topology v{persisted.version}")
            _router = ShardRouter(persisted.strategy, version=persisted.version, store=store)
    return _router
