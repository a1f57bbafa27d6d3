"""Pytest configuration and fixtures.

The control plane and every partition are SQLite files under a temporary
directory, so concurrent admissions exercise real uniqueness constraints.
"""

import json
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="ballotgate-tests-")

# Must be set before ballotgate_api builds its settings and engine
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/control.db"
os.environ["SHARD_PARTITIONS"] = json.dumps({"p0": f"sqlite:///{_TEST_DIR}/p0.db"})
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PARTITION_RETRY_BACKOFF_SECONDS"] = "0"

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from ballotgate_api.admission.coordinator import AdmissionCoordinator  # noqa: E402
from ballotgate_api.audit.ledger import AuditLedger, DatabaseAuditSink  # noqa: E402
from ballotgate_api.db.base import Base  # noqa: E402
from ballotgate_api.elections.service import ElectionService  # noqa: E402
from ballotgate_api.models import Election  # noqa: E402
from ballotgate_api.sharding.router import ShardRouter  # noqa: E402
from ballotgate_api.sharding.strategies import (  # noqa: E402
    ConsistentHashStrategy,
    SinglePartitionStrategy,
)
from ballotgate_api.storage.partition import PartitionRegistry, PartitionStore  # noqa: E402
from ballotgate_api.tokens.service import TokenService  # noqa: E402

ELECTION_ID = "election-2026"


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def engine(tmp_path):
    """Control-plane database for one test."""
    engine = create_engine(
        f"sqlite:///{tmp_path}/control.db",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def open_election(db: Session, clock: FakeClock) -> Election:
    """An election open for a day around the fake clock."""
    election = ElectionService(db, clock=clock).upsert(
        ELECTION_ID,
        "Test Election",
        "open",
        opens_at=clock() - timedelta(hours=1),
        closes_at=clock() + timedelta(days=1),
    )
    db.commit()
    return election


@pytest.fixture
def make_partitions(tmp_path):
    """Factory creating SQLite-backed partitions with their schema."""
    registries = []

    def _make(*partition_ids: str) -> PartitionRegistry:
        stores = []
        for partition_id in partition_ids:
            store = PartitionStore.from_url(
                partition_id, f"sqlite:///{tmp_path}/{partition_id}.db", timeout_seconds=30
            )
            store.ensure_schema()
            stores.append(store)
        registry = PartitionRegistry(stores)
        registries.append(registry)
        return registry

    yield _make
    for registry in registries:
        for store in registry.stores():
            store.dispose()


@pytest.fixture
def make_store(tmp_path):
    """Factory for a standalone partition store (e.g. one added by a rebalance)."""

    def _make(partition_id: str) -> PartitionStore:
        return PartitionStore.from_url(
            partition_id, f"sqlite:///{tmp_path}/{partition_id}.db", timeout_seconds=30
        )

    return _make


@pytest.fixture
def ledger(session_factory) -> AuditLedger:
    return AuditLedger(DatabaseAuditSink(session_factory), spool_max_events=100)


@pytest.fixture
def single_partition(make_partitions):
    partitions = make_partitions("p0")
    return partitions, ShardRouter(SinglePartitionStrategy("p0"))


@pytest.fixture
def sharded(make_partitions):
    partitions = make_partitions("p0", "p1", "p2", "p3")
    return partitions, ShardRouter(ConsistentHashStrategy(["p0", "p1", "p2", "p3"], 64))


@pytest.fixture
def make_coordinator(session_factory, ledger, clock):
    """Factory wiring a coordinator to the test databases."""

    def _make(partitions: PartitionRegistry, router: ShardRouter, **kwargs) -> AdmissionCoordinator:
        return AdmissionCoordinator(
            session_factory=session_factory,
            router=router,
            partitions=partitions,
            audit_ledger=kwargs.pop("audit_ledger", ledger),
            clock=kwargs.pop("clock", clock),
            sleep=lambda seconds: None,
            **kwargs,
        )

    return _make


@pytest.fixture
def issue_token(session_factory, clock):
    """Issue ballot tokens without superseding earlier ones."""

    def _issue(voting_id: str, election_id: str = ELECTION_ID) -> str:
        with session_factory() as session:
            issued = TokenService(session, supersede_prior=False, clock=clock).issue(
                voting_id, election_id
            )
        return issued["token"]

    return _issue
