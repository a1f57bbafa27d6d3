"""Partition rebalancing (split, merge, retire).

Sequence:
1. Stage the new topology. The router refuses writes for keys whose owner
   changes.
2. Wait for writes leased before the transition to finish.
3. Copy every moved ballot to its new owner with a conditional insert.
4. Persist and commit the topology. Routes computed on the old version become
   stale.
5. Purge moved copies from partitions that stay, detach retired partitions.

A key is writable on at most one partition at any instant: its old owner until
step 1, nobody during steps 1-4, its new owner after step 4. If any step before
the commit fails, copies already made in step 3 are discarded and the old
owner keeps the key.
"""

import logging
from collections import defaultdict
from typing import Iterable

from ballotgate_api.errors import PartitionUnavailable
from ballotgate_api.sharding.router import ShardRouter
from ballotgate_api.sharding.strategies import PlacementStrategy
from ballotgate_api.storage.partition import InsertOutcome, PartitionRegistry, PartitionStore
from ballotgate_api.utils.metrics import rebalances

logger = logging.getLogger(__name__)

Keys = dict[str, list[tuple[str, str]]]


class RebalanceError(Exception):
    """Rebalance could not complete; the previous topology remains current."""


class Rebalancer:
    """Moves ballots between partitions while the router fails closed."""

    def __init__(self, router: ShardRouter, partitions: PartitionRegistry, drain_timeout_seconds: float = 30.0):
        self.router = router
        self.partitions = partitions
        self.drain_timeout_seconds = drain_timeout_seconds

    def rebalance(self, strategy: PlacementStrategy, new_stores: Iterable[PartitionStore] = ()) -> dict:
        """Move to ``strategy``, attaching ``new_stores`` first."""
        for store in new_stores:
            store.ensure_schema()
            self.partitions.add(store)

        missing = set(strategy.partitions) - set(self.partitions.ids())
        if missing:
            raise RebalanceError(f"Partitions not attached: {sorted(missing)}")

        previous = self.router.topology
        self.router.begin_transition(strategy)
        moved: Keys = defaultdict(list)
        copied: Keys = defaultdict(list)
        try:
            if not self.router.wait_for_drain(self.drain_timeout_seconds):
                raise RebalanceError(
                    f"In-flight writes did not drain within {self.drain_timeout_seconds}s"
                )
            self._copy_moved_ballots(previous.strategy, strategy, moved, copied)
            current = self.router.commit_transition(
                {pid: self.partitions.get(pid).url for pid in strategy.partitions}
            )
        except Exception:
            self._discard(copied)
            self.router.abort_transition()
            rebalances.labels(result="aborted").inc()
            raise

        rebalances.labels(result="committed").inc()

        purged = {}
        for source_id, keys in moved.items():
            if source_id in strategy.partitions:
                try:
                    purged[source_id] = self.partitions.get(source_id).delete_ballots(keys)
                except PartitionUnavailable as e:
                    logger.warning(f"Relocated ballots left on partition {source_id}: {e}")

        retired = [pid for pid in previous.partitions if pid not in strategy.partitions]
        for partition_id in retired:
            self.partitions.remove(partition_id)

        summary = {
            "from_version": previous.version,
            "to_version": current.version,
            "moved": sum(len(keys) for keys in moved.values()),
            "purged": purged,
            "retired": retired,
        }
        logger.info(f"Rebalance complete: {summary}")
        return summary

    def _copy_moved_ballots(
        self,
        old_strategy: PlacementStrategy,
        new_strategy: PlacementStrategy,
        moved: Keys,
        copied: Keys,
    ) -> None:
        """Copy ballots whose owner changes; ``moved`` is keyed by source, ``copied`` by target."""
        for source_id in old_strategy.partitions:
            source = self.partitions.get(source_id)
            for ballot in source.iter_ballots():
                if old_strategy.place(ballot.election_id, ballot.voting_id) != source_id:
                    continue
                target_id = new_strategy.place(ballot.election_id, ballot.voting_id)
                if target_id == source_id:
                    continue
                outcome = self.partitions.get(target_id).conditional_insert(ballot)
                if outcome is not InsertOutcome.INSERTED:
                    raise RebalanceError(
                        f"Partition {target_id} already holds a different ballot for a key "
                        f"owned by {source_id}"
                    )
                copied[target_id].append(ballot.key)
                moved[source_id].append(ballot.key)

    def _discard(self, copied: Keys) -> None:
        # Copied keys were unwritable on their target, so every row removed
        # here is one this rebalance created.
        for target_id, keys in copied.items():
            try:
                removed = self.partitions.get(target_id).delete_ballots(keys)
                logger.info(f"Discarded {removed} copied ballot(s) from partition {target_id}")
            except PartitionUnavailable as e:
                logger.error(
                    f"Could not discard {len(keys)} copied ballot(s) from partition {target_id}: {e}"
                )
