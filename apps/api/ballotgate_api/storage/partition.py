"""Partition storage with an atomic conditional insert.

Each partition is an independent database holding the ``ballots`` table. The
uniqueness constraint on (election_id, voting_id) is the only serialization
point for admissions: an insert either creates the row or fails with an
integrity error, and that is decided by the database, never by this process.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional

from sqlalchemy import create_engine, delete, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from ballotgate_api.errors import PartitionUnavailable, ReceiptCollision
from ballotgate_api.settings import Settings, get_settings
from ballotgate_api.sharding.strategies import PlacementStrategy
from ballotgate_api.sharding.topology_store import PersistedTopology, load_persisted_topology
from ballotgate_api.storage.models import BallotRecord, PartitionBase

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class InsertOutcome(str, Enum):
    """Result of a conditional insert."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class BallotWrite:
    """Ballot values written to a partition."""

    election_id: str
    voting_id: str
    payload: str
    payload_hash: str
    receipt_id: str
    submitted_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.election_id, self.voting_id)


def build_partition_engine(url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose requests are bounded by ``timeout_seconds``."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        },
    )


class PartitionStore:
    """Ballot storage for one partition."""

    def __init__(self, partition_id: str, engine: Engine):
        """Initialize store with the partition's engine."""
        self.partition_id = partition_id
        self.engine = engine
        self.url = engine.url.render_as_string(hide_password=False)
        self._sessionmaker = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @classmethod
    def from_url(cls, partition_id: str, url: str, timeout_seconds: float = 5.0) -> "PartitionStore":
        return cls(partition_id, build_partition_engine(url, timeout_seconds))

    def ensure_schema(self) -> None:
        """Create the ballots table if it does not exist."""
        PartitionBase.metadata.create_all(self.engine)

    def conditional_insert(self, ballot: BallotWrite) -> InsertOutcome:
        """Insert ``ballot`` only if no ballot exists for its key.

        Returns INSERTED when the stored row is this ballot, which also covers a
        retry after an ambiguous failure where the first attempt had committed.
        Raises ReceiptCollision when the receipt id, not the key, conflicted and
        PartitionUnavailable on transient storage errors.
        """
        session = self._sessionmaker()
        try:
            session.add(
                BallotRecord(
                    election_id=ballot.election_id,
                    voting_id=ballot.voting_id,
                    payload=ballot.payload,
                    payload_hash=ballot.payload_hash,
                    receipt_id=ballot.receipt_id,
                    submitted_at=ballot.submitted_at,
                )
            )
            session.commit()
            return InsertOutcome.INSERTED
        except IntegrityError:
            session.rollback()
            existing_receipt = self._existing_receipt(session, ballot)
            if existing_receipt is None:
                raise ReceiptCollision(ballot.receipt_id)
            if existing_receipt == ballot.receipt_id:
                return InsertOutcome.INSERTED
            return InsertOutcome.ALREADY_EXISTS
        except TRANSIENT_ERRORS as e:
            logger.warning(
                f"Conditional insert failed on partition {self.partition_id}: {e}",
                extra={"partition_id": self.partition_id},
            )
            raise PartitionUnavailable(self.partition_id, e) from e
        finally:
            session.close()

    def _existing_receipt(self, session, ballot: BallotWrite) -> Optional[str]:
        try:
            return session.execute(
                select(BallotRecord.receipt_id).where(
                    BallotRecord.election_id == ballot.election_id,
                    BallotRecord.voting_id == ballot.voting_id,
                )
            ).scalar_one_or_none()
        except TRANSIENT_ERRORS as e:
            raise PartitionUnavailable(self.partition_id, e) from e

    def get_ballot(self, election_id: str, voting_id: str) -> Optional[BallotWrite]:
        """Read the ballot stored for a key."""
        with self._sessionmaker() as session:
            record = session.execute(
                select(BallotRecord).where(
                    BallotRecord.election_id == election_id,
                    BallotRecord.voting_id == voting_id,
                )
            ).scalar_one_or_none()
            return self._to_write(record) if record else None

    def iter_ballots(self, election_id: Optional[str] = None, batch_size: int = 500) -> Iterator[BallotWrite]:
        """Iterate stored ballots in primary key order."""
        last_id = 0
        while True:
            try:
                with self._sessionmaker() as session:
                    query = select(BallotRecord).where(BallotRecord.id > last_id)
                    if election_id is not None:
                        query = query.where(BallotRecord.election_id == election_id)
                    rows = session.execute(query.order_by(BallotRecord.id).limit(batch_size)).scalars().all()
                    batch = [self._to_write(row) for row in rows]
                    if rows:
                        last_id = rows[-1].id
            except TRANSIENT_ERRORS as e:
                raise PartitionUnavailable(self.partition_id, e) from e
            if not batch:
                return
            yield from batch

    def count_ballots(self, election_id: str, owner: Optional[PlacementStrategy] = None) -> int:
        """Count stored ballots for an election.

        With ``owner`` only keys that strategy places on this partition count,
        so copies left behind by an interrupted rebalance are ignored.
        """
        try:
            with self._sessionmaker() as session:
                if owner is None:
                    return session.execute(
                        select(func.count(BallotRecord.id)).where(BallotRecord.election_id == election_id)
                    ).scalar_one()
                voting_ids = session.execute(
                    select(BallotRecord.voting_id).where(BallotRecord.election_id == election_id)
                ).scalars()
                return sum(
                    1 for voting_id in voting_ids
                    if owner.place(election_id, voting_id) == self.partition_id
                )
        except TRANSIENT_ERRORS as e:
            raise PartitionUnavailable(self.partition_id, e) from e

    def delete_ballots(self, keys: Iterable[tuple[str, str]]) -> int:
        """Remove ballots this partition does not own (relocated or copied)."""
        removed = 0
        try:
            with self._sessionmaker() as session:
                for election_id, voting_id in keys:
                    result = session.execute(
                        delete(BallotRecord).where(
                            BallotRecord.election_id == election_id,
                            BallotRecord.voting_id == voting_id,
                        )
                    )
                    removed += result.rowcount
                session.commit()
        except TRANSIENT_ERRORS as e:
            raise PartitionUnavailable(self.partition_id, e) from e
        return removed

    def ping(self) -> bool:
        """Check partition connectivity."""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except TRANSIENT_ERRORS as e:
            logger.error(f"Partition {self.partition_id} check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_write(record: BallotRecord) -> BallotWrite:
        return BallotWrite(
            election_id=record.election_id,
            voting_id=record.voting_id,
            payload=record.payload,
            payload_hash=record.payload_hash,
            receipt_id=record.receipt_id,
            submitted_at=record.submitted_at,
        )


class PartitionRegistry:
    """Partition id to store mapping."""

    def __init__(self, stores: Optional[Iterable[PartitionStore]] = None):
        self._lock = threading.Lock()
        self._stores: dict[str, PartitionStore] = {}
        for store in stores or []:
            self._stores[store.partition_id] = store

    @classmethod
    def from_topology(cls, topology: PersistedTopology, settings: Settings) -> "PartitionRegistry":
        return cls(
            PartitionStore.from_url(partition_id, url, settings.partition_timeout_seconds)
            for partition_id, url in topology.partition_urls.items()
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PartitionRegistry":
        return cls(
            PartitionStore.from_url(partition_id, url, settings.partition_timeout_seconds)
            for partition_id, url in settings.shard_partitions.items()
        )

    def get(self, partition_id: str) -> PartitionStore:
        """Get a store, raising PartitionUnavailable when it is not attached."""
        with self._lock:
            store = self._stores.get(partition_id)
        if store is None:
            raise PartitionUnavailable(partition_id, KeyError(partition_id))
        return store

    def add(self, store: PartitionStore) -> None:
        with self._lock:
            self._stores[store.partition_id] = store

    def remove(self, partition_id: str) -> Optional[PartitionStore]:
        with self._lock:
            store = self._stores.pop(partition_id, None)
        if store is not None:
            store.dispose()
        return store

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._stores)

    def stores(self) -> list[PartitionStore]:
        with self._lock:
            return [self._stores[pid] for pid in sorted(self._stores)]

    def ensure_schema(self) -> None:
        for store in self.stores():
            store.ensure_schema()


# Global instance
_partition_registry: Optional[PartitionRegistry] = None


def get_partition_registry() -> PartitionRegistry:
    """Get or create the partition registry.

    Partitions of the latest committed topology, or of settings before the
    first rebalance.
    """
    global _partition_registry
    if _partition_registry is None:
        persisted = load_persisted_topology()
        if persisted is None:
            _partition_registry = PartitionRegistry.from_settings(get_settings())
        else:
            _partition_registry = PartitionRegistry.from_topology(persisted, get_settings())
    return _partition_registry
