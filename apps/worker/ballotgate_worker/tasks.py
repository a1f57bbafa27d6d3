"""Celery tasks consuming the audit stream.

Nothing here participates in admission decisions; results are advisory flags
and reconciliation reports for operators.
"""

import logging
from typing import Optional

from celery import Task
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ballotgate_worker.celery_app import celery_app
from ballotgate_worker.db import get_db

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Task with database session."""

    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        """Get database session."""
        if self._db is None:
            self._db = next(get_db())
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task."""
        if self._db:
            self._db.close()
            self._db = None


@celery_app.task(
    base=DatabaseTask,
    bind=True,
    max_retries=3,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)
def detect_anomalies(self, election_id: str, correlation_id: Optional[str] = None):
    """Flag voters with repeated duplicate attempts or token rejection bursts."""
    from ballotgate_api.audit.anomaly import AnomalyDetector

    log_extra = {
        "task": "detect_anomalies",
        "election_id": election_id,
        "correlation_id": correlation_id,
    }
    findings = AnomalyDetector(self.db).scan(election_id)
    logger.info(f"Anomaly scan found {len(findings)} flag(s)", extra=log_extra)
    return {"election_id": election_id, "flags": len(findings)}


@celery_app.task(
    base=DatabaseTask,
    bind=True,
    max_retries=3,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)
def reconcile_election(self, election_id: str):
    """Compare stored ballots with admitted audit events."""
    from ballotgate_api.audit.reconciliation import reconcile_election as reconcile
    from ballotgate_api.sharding.router import get_router
    from ballotgate_api.storage.partition import get_partition_registry

    owner = get_router().topology.strategy
    report = reconcile(self.db, get_partition_registry(), election_id, owner)
    if report["consistent"] is None:
        logger.warning(
            f"Reconciliation incomplete; unavailable partitions {report['unavailable_partitions']}",
            extra={"task": "reconcile_election", "election_id": election_id},
        )
    return report


@celery_app.task(base=DatabaseTask, bind=True)
def scan_open_elections(self):
    """Fan out anomaly scans for every open election."""
    from ballotgate_api.elections.service import ElectionService

    election_ids = [election.election_id for election in ElectionService(self.db).list_open()]
    for election_id in election_ids:
        detect_anomalies.delay(election_id)
    logger.info(f"Scheduled anomaly scans for {len(election_ids)} open election(s)")
    return election_ids


@celery_app.task(base=DatabaseTask, bind=True)
def reconcile_open_elections(self):
    """Fan out reconciliation for every open election."""
    from ballotgate_api.elections.service import ElectionService

    election_ids = [election.election_id for election in ElectionService(self.db).list_open()]
    for election_id in election_ids:
        reconcile_election.delay(election_id)
    return election_ids


@celery_app.task(base=DatabaseTask, bind=True)
def purge_expired_tokens(self):
    """Delete server-side state of expired ballot tokens."""
    from ballotgate_api.tokens.service import TokenService

    removed = TokenService(self.db).purge_expired()
    logger.info(f"Purged {removed} expired token(s)", extra={"task": "purge_expired_tokens"})
    return removed
