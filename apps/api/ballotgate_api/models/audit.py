"""Audit ledger models."""

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint

from ballotgate_api.db.base import Base
from ballotgate_api.utils.clock import utcnow


class AuditEvent(Base):
    """Append-only record of an admission attempt."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(36), nullable=False, unique=True, index=True)
    event_hash = Column(String(64), nullable=False, index=True)
    election_id = Column(String(255), nullable=False, index=True)
    voter_hash = Column(String(64), nullable=True, index=True)  # NULL when the token could not be attributed
    kind = Column(String(50), nullable=False, index=True)  # admitted, duplicate_rejected, token_rejected, etc.
    correlation_id = Column(String(255), nullable=True, index=True)
    detail_json = Column(JSON, nullable=False)
    occurred_at = Column(DateTime, nullable=False, index=True)
    recorded_at = Column(DateTime, default=utcnow, nullable=False)


class AnomalyFlag(Base):
    """Advisory finding produced by the anomaly scanner."""

    __tablename__ = "anomaly_flags"
    __table_args__ = (
        UniqueConstraint("election_id", "voter_hash", "rule", name="uq_anomaly_flag_voter_rule"),
    )

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(String(255), nullable=False, index=True)
    voter_hash = Column(String(64), nullable=False, index=True)
    rule = Column(String(100), nullable=False)  # repeated_duplicates, token_rejection_burst
    event_count = Column(Integer, nullable=False)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
