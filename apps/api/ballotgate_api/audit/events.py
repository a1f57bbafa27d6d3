"""Audit event values."""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ballotgate_api.utils.clock import utcnow

ADMITTED = "admitted"
DUPLICATE_REJECTED = "duplicate_rejected"
TOKEN_REJECTED = "token_rejected"
EXPIRED = "expired"
ELECTION_CLOSED = "election_closed"
SHARD_UNAVAILABLE = "shard_unavailable"

EVENT_KINDS = (
    ADMITTED,
    DUPLICATE_REJECTED,
    TOKEN_REJECTED,
    EXPIRED,
    ELECTION_CLOSED,
    SHARD_UNAVAILABLE,
)


def hash_voter(voting_id: str) -> str:
    """Voter key used in audit events and anomaly flags."""
    return hashlib.sha256(f"audit:{voting_id}".encode()).hexdigest()


def canonical_event(
    event_id: str,
    election_id: str,
    voter_hash: Optional[str],
    kind: str,
    correlation_id: Optional[str],
    detail: dict,
    occurred_at: datetime,
) -> dict:
    return {
        "event_id": event_id,
        "election_id": election_id,
        "voter_hash": voter_hash,
        "kind": kind,
        "correlation_id": correlation_id,
        "detail": detail,
        "occurred_at": occurred_at.isoformat(),
    }


def hash_event(event_data: dict) -> str:
    """Compute hash of canonical event data."""
    event_str = json.dumps(event_data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(event_str.encode()).hexdigest()


@dataclass
class AuditRecord:
    """One admission attempt, as handed to the ledger."""

    election_id: str
    kind: str
    voter_hash: Optional[str] = None
    detail: dict = field(default_factory=dict)
    correlation_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown audit event kind: {self.kind}")

    def canonical(self) -> dict:
        return canonical_event(
            self.event_id,
            self.election_id,
            self.voter_hash,
            self.kind,
            self.correlation_id,
            self.detail,
            self.occurred_at,
        )

    @property
    def event_hash(self) -> str:
        return hash_event(self.canonical())
