"""Issued ballot token model."""

from sqlalchemy import Column, DateTime, Index, String

from ballotgate_api.db.base import Base


class IssuedToken(Base):
    """Server-side state of a ballot token, keyed by the hash of its nonce."""

    __tablename__ = "issued_tokens"
    __table_args__ = (
        Index("ix_issued_tokens_pair_status", "voting_id", "election_id", "status"),
    )

    nonce_hash = Column(String(64), primary_key=True)
    voting_id = Column(String(64), nullable=False)
    election_id = Column(String(255), nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, superseded, consumed
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
