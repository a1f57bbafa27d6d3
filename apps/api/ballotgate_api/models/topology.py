"""Committed shard topology model."""

from sqlalchemy import Column, DateTime, Integer, JSON

from ballotgate_api.db.base import Base
from ballotgate_api.utils.clock import utcnow


class ShardTopology(Base):
    """One committed topology version. The highest version is current."""

    __tablename__ = "shard_topologies"

    id = Column(Integer, primary_key=True, index=True)
    version = Column(Integer, nullable=False, unique=True, index=True)
    strategy_json = Column(JSON, nullable=False)  # PlacementStrategy.describe()
    partitions_json = Column(JSON, nullable=False)  # partition id -> database URL
    committed_at = Column(DateTime, default=utcnow, nullable=False)
