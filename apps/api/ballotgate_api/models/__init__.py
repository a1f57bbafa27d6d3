"""Database models - import all models here for Alembic discovery."""

from ballotgate_api.models.audit import AnomalyFlag, AuditEvent
from ballotgate_api.models.client import ApiClient
from ballotgate_api.models.election import Election
from ballotgate_api.models.identity import IdentityRecord, VotingIdentifier
from ballotgate_api.models.token import IssuedToken
from ballotgate_api.models.topology import ShardTopology

__all__ = [
    "IdentityRecord",
    "VotingIdentifier",
    "Election",
    "IssuedToken",
    "AuditEvent",
    "AnomalyFlag",
    "ApiClient",
    "ShardTopology",
]
