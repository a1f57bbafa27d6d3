"""Append-only audit ledger.

``AuditLedger.record`` never raises into the admission flow. When the sink is
down, events are spooled in-process for redelivery, the ledger reports itself
degraded, and operators see it on /ready, /admin/audit/status and the
``ballotgate_audit_degraded`` gauge. Delivery is at-least-once; the sink drops
redelivered events by ``event_id``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ballotgate_api.audit.events import AuditRecord, canonical_event, hash_event
from ballotgate_api.errors import AuditDegraded
from ballotgate_api.models import AuditEvent
from ballotgate_api.settings import get_settings
from ballotgate_api.utils.metrics import audit_degraded, audit_events_dropped, audit_spool_size

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Durable append-only destination for audit records."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        """Persist ``record``. Raises AuditDegraded when it cannot."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass


class DatabaseAuditSink(AuditSink):
    """Audit sink writing to the control-plane ``audit_events`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(self, record: AuditRecord) -> None:
        db = self.session_factory()
        try:
            db.add(
                AuditEvent(
                    event_id=record.event_id,
                    event_hash=record.event_hash,
                    election_id=record.election_id,
                    voter_hash=record.voter_hash,
                    kind=record.kind,
                    correlation_id=record.correlation_id,
                    detail_json=record.detail,
                    occurred_at=record.occurred_at,
                )
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if not self._already_delivered(db, record.event_id):
                raise AuditDegraded(f"Audit insert rejected: {e}") from e
        except SQLAlchemyError as e:
            raise AuditDegraded(f"Audit store unavailable: {e}") from e
        finally:
            db.close()

    def _already_delivered(self, db: Session, event_id: str) -> bool:
        try:
            return db.query(AuditEvent.id).filter(AuditEvent.event_id == event_id).first() is not None
        except SQLAlchemyError as e:
            raise AuditDegraded(f"Audit store unavailable: {e}") from e

    def ping(self) -> bool:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Audit store check failed: {e}")
            return False
        finally:
            db.close()


class AuditLedger:
    """Records admission attempts without ever failing the caller."""

    def __init__(self, sink: AuditSink, spool_max_events: int = 10000):
        self.sink = sink
        self.spool_max_events = spool_max_events
        self._spool: deque[AuditRecord] = deque()
        self._lock = threading.Lock()
        self._degraded = False
        self._last_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    def record(self, record: AuditRecord) -> bool:
        """Deliver ``record``; returns False if it had to be spooled."""
        if self._spool:
            self.flush()
        try:
            self.sink.append(record)
            return True
        except AuditDegraded as e:
            self._enqueue(record, e)
            return False

    def flush(self) -> int:
        """Redeliver spooled records in order. Returns how many were delivered."""
        delivered = 0
        with self._lock:
            while self._spool:
                record = self._spool[0]
                try:
                    self.sink.append(record)
                except AuditDegraded as e:
                    self._mark_degraded(e)
                    break
                self._spool.popleft()
                delivered += 1
            if not self._spool and self._degraded:
                self._degraded = False
                self._last_error = None
                audit_degraded.set(0)
                logger.info("Audit ledger recovered; spool drained")
            audit_spool_size.set(len(self._spool))
        return delivered

    def status(self) -> dict:
        return {
            "degraded": self._degraded,
            "spooled_events": len(self._spool),
            "spool_capacity": self.spool_max_events,
            "last_error": self._last_error,
        }

    def _enqueue(self, record: AuditRecord, error: AuditDegraded) -> None:
        with self._lock:
            self._mark_degraded(error)
            if len(self._spool) >= self.spool_max_events:
                audit_events_dropped.inc()
                # The log line is the last durable copy of this event.
                logger.critical(
                    "Audit spool full; event not persisted",
                    extra={"audit_event": record.canonical()},
                )
                return
            self._spool.append(record)
            audit_spool_size.set(len(self._spool))

    def _mark_degraded(self, error: AuditDegraded) -> None:
        if not self._degraded:
            logger.error(f"Audit ledger degraded: {error.detail}")
        self._degraded = True
        self._last_error = error.detail
        audit_degraded.set(1)


class AuditQueryService:
    """Read side of the audit ledger."""

    def __init__(self, db: Session):
        """Initialize query service with database session."""
        self.db = db

    def count_by_kind(self, election_id: str) -> dict[str, int]:
        rows = (
            self.db.query(AuditEvent.kind, func.count(AuditEvent.id))
            .filter(AuditEvent.election_id == election_id)
            .group_by(AuditEvent.kind)
            .all()
        )
        return {kind: count for kind, count in rows}

    def verify_integrity(self, election_id: str) -> tuple[bool, Optional[str]]:
        """Recompute each event hash for an election."""
        events = (
            self.db.query(AuditEvent)
            .filter(AuditEvent.election_id == election_id)
            .order_by(AuditEvent.id.asc())
            .all()
        )
        for event in events:
            computed_hash = hash_event(
                canonical_event(
                    event.event_id,
                    event.election_id,
                    event.voter_hash,
                    event.kind,
                    event.correlation_id,
                    event.detail_json,
                    event.occurred_at,
                )
            )
            if computed_hash != event.event_hash:
                return False, f"Event {event.event_id} hash mismatch"
        return True, None


# Global instance
_audit_ledger: Optional[AuditLedger] = None


def get_audit_ledger() -> AuditLedger:
    """Get or create the audit ledger backed by the control-plane database."""
    global _audit_ledger
    if _audit_ledger is None:
        from ballotgate_api.db.session import SessionLocal

        _audit_ledger = AuditLedger(
            DatabaseAuditSink(SessionLocal),
            spool_max_events=get_settings().audit_spool_max_events,
        )
    return _audit_ledger
