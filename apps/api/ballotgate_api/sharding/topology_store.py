"""Committed topologies in the control-plane database.

The router only ever runs on a topology that is recorded here (or, before the
first rebalance, on the one built from settings). A restarted process therefore
routes every key to the partition that holds its ballot.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ballotgate_api.models import ShardTopology
from ballotgate_api.sharding.strategies import PlacementStrategy, strategy_from_description

logger = logging.getLogger(__name__)


class TopologyConflict(RuntimeError):
    """Another process committed the same topology version first."""


@dataclass(frozen=True)
class PersistedTopology:
    """A committed topology with the database URL of each partition."""

    version: int
    strategy: PlacementStrategy
    partition_urls: dict[str, str]


class TopologyStore:
    """Read and append committed topology versions."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def load_latest(self) -> Optional[PersistedTopology]:
        """Highest committed version, or None before the first rebalance."""
        with self.session_factory() as db:
            record = db.query(ShardTopology).order_by(ShardTopology.version.desc()).first()
            if record is None:
                return None
            return PersistedTopology(
                version=record.version,
                strategy=strategy_from_description(record.strategy_json),
                partition_urls=dict(record.partitions_json),
            )

    def save(self, version: int, strategy: PlacementStrategy, partition_urls: Mapping[str, str]) -> None:
        missing = set(strategy.partitions) - set(partition_urls)
        if missing:
            raise ValueError(f"No database URL for partitions {sorted(missing)}")

        with self.session_factory() as db:
            db.add(
                ShardTopology(
                    version=version,
                    strategy_json=strategy.describe(),
                    partitions_json={pid: partition_urls[pid] for pid in strategy.partitions},
                )
            )
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise TopologyConflict(f"Topology v{version} was already committed elsewhere") from e
        logger.info(f"Persisted topology v{version}", extra={"partitions": list(strategy.partitions)})


def load_persisted_topology() -> Optional[PersistedTopology]:
    """Latest committed topology from the process-wide control-plane database."""
    from ballotgate_api.db.session import SessionLocal

    return TopologyStore(SessionLocal).load_latest()
