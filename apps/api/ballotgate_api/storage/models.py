"""Ballot storage models (one schema per partition database)."""

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

PartitionBase = declarative_base()


class BallotRecord(PartitionBase):
    """An admitted ballot. At most one per (election_id, voting_id)."""

    __tablename__ = "ballots"
    __table_args__ = (
        UniqueConstraint("election_id", "voting_id", name="uq_ballot_election_voter"),
        UniqueConstraint("receipt_id", name="uq_ballot_receipt"),
    )

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(String(255), nullable=False, index=True)
    voting_id = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    receipt_id = Column(String(64), nullable=False)
    submitted_at = Column(DateTime, nullable=False)
