"""Identity and voting identifier models."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from ballotgate_api.db.base import Base
from ballotgate_api.utils.clock import utcnow


class IdentityRecord(Base):
    """One verified external account."""

    __tablename__ = "identity_records"
    __table_args__ = (
        UniqueConstraint("provider", "provider_subject", name="uq_identity_provider_subject"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(100), nullable=False)  # oauth:google, webauthn, gov_id, etc.
    provider_subject = Column(String(255), nullable=False)
    human_hash = Column(String(64), nullable=False, unique=True, index=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    voting_identifiers = relationship("VotingIdentifier", back_populates="identity_record")


class VotingIdentifier(Base):
    """Pseudonymous voting identifier, immutable once issued."""

    __tablename__ = "voting_identifiers"
    __table_args__ = (
        UniqueConstraint("human_hash", "scope", name="uq_voting_identifier_human_scope"),
    )

    id = Column(Integer, primary_key=True, index=True)
    voting_id = Column(String(64), nullable=False, unique=True, index=True)
    human_hash = Column(String(64), nullable=False, index=True)
    scope = Column(String(255), nullable=False)  # "global" or an election id
    identity_record_id = Column(Integer, ForeignKey("identity_records.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    identity_record = relationship("IdentityRecord", back_populates="voting_identifiers")
