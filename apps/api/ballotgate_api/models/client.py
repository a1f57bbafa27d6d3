"""API client model for identity gateways and operators."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from ballotgate_api.db.base import Base
from ballotgate_api.utils.clock import utcnow


class ApiClient(Base):
    """API key for a trusted caller (identity gateway, operator console)."""

    __tablename__ = "api_clients"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(255), nullable=False, unique=True)
    prefix = Column(String(16), nullable=False, index=True)
    digest = Column(String(64), nullable=False, unique=True)
    scopes = Column(Text, nullable=True)  # JSON array of scopes
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
