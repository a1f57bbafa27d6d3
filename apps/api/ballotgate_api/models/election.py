"""Election descriptor model."""

from sqlalchemy import Column, DateTime, Integer, String

from ballotgate_api.db.base import Base
from ballotgate_api.utils.clock import utcnow


class Election(Base):
    """Election descriptor mirrored from the lifecycle service."""

    __tablename__ = "elections"

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=False)
    status = Column(String(20), default="draft", nullable=False)  # draft, open, closed
    opens_at = Column(DateTime, nullable=True)
    closes_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
