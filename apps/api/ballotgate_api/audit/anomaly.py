"""Advisory anomaly detection over the audit stream.

Runs asynchronously (Celery) and only writes ``anomaly_flags``; it never
participates in an admission decision.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ballotgate_api.audit.events import DUPLICATE_REJECTED, EXPIRED, TOKEN_REJECTED
from ballotgate_api.models import AnomalyFlag, AuditEvent
from ballotgate_api.settings import get_settings

logger = logging.getLogger(__name__)

REPEATED_DUPLICATES = "repeated_duplicates"
TOKEN_REJECTION_BURST = "token_rejection_burst"


class AnomalyDetector:
    """Flag voters whose admission attempts look abusive."""

    def __init__(
        self,
        db: Session,
        duplicate_threshold: Optional[int] = None,
        token_rejection_threshold: Optional[int] = None,
    ):
        """Initialize detector with database session and thresholds."""
        settings = get_settings()
        self.db = db
        self.duplicate_threshold = duplicate_threshold or settings.anomaly_duplicate_threshold
        self.token_rejection_threshold = (
            token_rejection_threshold or settings.anomaly_token_rejection_threshold
        )

    def scan(self, election_id: str) -> list[dict]:
        """Evaluate rules for one election and upsert flags. Returns findings."""
        rows = (
            self.db.query(
                AuditEvent.voter_hash,
                AuditEvent.kind,
                func.count(AuditEvent.id),
                func.min(AuditEvent.occurred_at),
                func.max(AuditEvent.occurred_at),
            )
            .filter(
                AuditEvent.election_id == election_id,
                AuditEvent.voter_hash.isnot(None),
                AuditEvent.kind.in_([DUPLICATE_REJECTED, TOKEN_REJECTED, EXPIRED]),
            )
            .group_by(AuditEvent.voter_hash, AuditEvent.kind)
            .all()
        )

        # voter_hash -> rule -> [count, first_seen, last_seen]
        tallies: dict[str, dict[str, list]] = {}
        for voter_hash, kind, count, first_seen, last_seen in rows:
            rule = REPEATED_DUPLICATES if kind == DUPLICATE_REJECTED else TOKEN_REJECTION_BURST
            entry = tallies.setdefault(voter_hash, {}).setdefault(rule, [0, first_seen, last_seen])
            entry[0] += count
            entry[1] = min(entry[1], first_seen)
            entry[2] = max(entry[2], last_seen)

        thresholds = {
            REPEATED_DUPLICATES: self.duplicate_threshold,
            TOKEN_REJECTION_BURST: self.token_rejection_threshold,
        }
        findings = []
        for voter_hash, rules in tallies.items():
            for rule, (count, first_seen, last_seen) in rules.items():
                if count < thresholds[rule]:
                    continue
                self._upsert_flag(election_id, voter_hash, rule, count, first_seen, last_seen)
                findings.append(
                    {
                        "election_id": election_id,
                        "voter_hash": voter_hash,
                        "rule": rule,
                        "event_count": count,
                    }
                )

        self.db.commit()
        if findings:
            logger.warning(
                f"Anomaly scan flagged {len(findings)} voter(s)",
                extra={"election_id": election_id},
            )
        return findings

    def _upsert_flag(self, election_id, voter_hash, rule, count, first_seen, last_seen):
        flag = (
            self.db.query(AnomalyFlag)
            .filter(
                AnomalyFlag.election_id == election_id,
                AnomalyFlag.voter_hash == voter_hash,
                AnomalyFlag.rule == rule,
            )
            .first()
        )
        if flag:
            flag.event_count = count
            flag.last_seen_at = last_seen
        else:
            self.db.add(
                AnomalyFlag(
                    election_id=election_id,
                    voter_hash=voter_hash,
                    rule=rule,
                    event_count=count,
                    first_seen_at=first_seen,
                    last_seen_at=last_seen,
                )
            )
