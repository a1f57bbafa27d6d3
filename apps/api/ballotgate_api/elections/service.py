"""Election descriptor reads and mirroring."""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ballotgate_api.errors import ElectionClosed, ElectionNotFound
from ballotgate_api.models import Election
from ballotgate_api.utils.clock import to_naive_utc, utcnow

ELECTION_STATUSES = ("draft", "open", "closed")


def is_open(election: Election, now: datetime) -> bool:
    """Open means status 'open' and ``now`` inside [opens_at, closes_at)."""
    if election.status != "open":
        return False
    if election.opens_at is not None and now < election.opens_at:
        return False
    if election.closes_at is not None and now >= election.closes_at:
        return False
    return True


class ElectionService:
    """Read election descriptors owned by the lifecycle service."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        """Initialize service with database session."""
        self.db = db
        self.clock = clock

    def get(self, election_id: str) -> Election:
        election = self.db.query(Election).filter(Election.election_id == election_id).first()
        if not election:
            raise ElectionNotFound(f"Election {election_id} not found")
        return election

    def require_open(self, election_id: str) -> Election:
        """Return the election or raise ElectionClosed if it is not accepting ballots."""
        election = self.get(election_id)
        if not is_open(election, self.clock()):
            raise ElectionClosed(f"Election {election_id} is not open for voting")
        return election

    def upsert(
        self,
        election_id: str,
        display_name: str,
        status: str,
        opens_at: Optional[datetime] = None,
        closes_at: Optional[datetime] = None,
    ) -> Election:
        """Mirror a descriptor pushed by the lifecycle service."""
        if status not in ELECTION_STATUSES:
            raise ValueError(f"Unknown election status: {status}")
        opens_at = to_naive_utc(opens_at) if opens_at else None
        closes_at = to_naive_utc(closes_at) if closes_at else None
        if opens_at and closes_at and closes_at <= opens_at:
            raise ValueError("closes_at must be after opens_at")

        election = self.db.query(Election).filter(Election.election_id == election_id).first()
        if election is None:
            election = Election(election_id=election_id)
            self.db.add(election)
        election.display_name = display_name
        election.status = status
        election.opens_at = opens_at
        election.closes_at = closes_at
        self.db.flush()
        return election

    def list_open(self) -> list[Election]:
        now = self.clock()
        candidates = self.db.query(Election).filter(Election.status == "open").all()
        return [election for election in candidates if is_open(election, now)]
