"""Admission coordinator: the single decision point for accepting a ballot.

A submission is admitted only if its token is valid and unspent, its election
is open, and the conditional insert on the owning partition creates the row.
Whether a voter has already voted is decided by that insert alone; nothing in
this module reads first and writes later.

Every attempt produces exactly one audit event.
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ballotgate_api.admission.receipts import ReceiptGenerator, payload_digest
from ballotgate_api.audit.events import (
    ADMITTED,
    DUPLICATE_REJECTED,
    ELECTION_CLOSED,
    EXPIRED,
    SHARD_UNAVAILABLE,
    TOKEN_REJECTED,
    AuditRecord,
    hash_voter,
)
from ballotgate_api.audit.ledger import AuditLedger, get_audit_ledger
from ballotgate_api.elections.service import ElectionService
from ballotgate_api.errors import (
    AlreadyVoted,
    BallotGateError,
    ElectionClosed,
    ElectionNotFound,
    PartitionUnavailable,
    ReceiptCollision,
    ShardUnavailable,
    StaleRouteError,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenInvalid,
)
from ballotgate_api.settings import Settings, get_settings
from ballotgate_api.sharding.router import Route, ShardRouter, Topology, get_router
from ballotgate_api.storage.partition import (
    BallotWrite,
    InsertOutcome,
    PartitionRegistry,
    get_partition_registry,
)
from ballotgate_api.tokens.service import TokenService
from ballotgate_api.utils.clock import utcnow
from ballotgate_api.utils.metrics import (
    admission_duration,
    admission_requests,
    partition_write_retries,
    stale_route_retries,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionReceipt:
    """Returned to the voter when a ballot is admitted."""

    receipt_id: str
    election_id: str
    submitted_at: datetime


class AdmissionCoordinator:
    """Admit ballots: validate, route, conditionally insert, audit."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        router: ShardRouter,
        partitions: PartitionRegistry,
        audit_ledger: AuditLedger,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.router = router
        self.partitions = partitions
        self.audit_ledger = audit_ledger
        self.receipts = ReceiptGenerator(settings.receipt_key)
        self.write_attempts = max(1, settings.partition_write_attempts)
        self.retry_backoff_seconds = settings.partition_retry_backoff_seconds
        self.route_attempts = max(1, settings.route_attempts)
        self.clock = clock
        self.sleep = sleep
        router.subscribe(self._on_topology_change)

    def admit(
        self,
        election_id: str,
        token: str,
        payload: str,
        correlation_id: Optional[str] = None,
    ) -> AdmissionReceipt:
        """Admit one ballot or raise the BallotGateError explaining why not.

        Raises TokenInvalid, TokenExpired, TokenAlreadyConsumed, ElectionNotFound,
        ElectionClosed, AlreadyVoted or ShardUnavailable.
        """
        started = time.perf_counter()
        outcome = "error"
        try:
            receipt = self._admit(election_id, token, payload, correlation_id)
            outcome = ADMITTED
            return receipt
        except BallotGateError as e:
            outcome = e.error_code.lower()
            raise
        finally:
            admission_requests.labels(outcome=outcome).inc()
            admission_duration.observe(time.perf_counter() - started)

    def _admit(
        self,
        election_id: str,
        token: str,
        payload: str,
        correlation_id: Optional[str],
    ) -> AdmissionReceipt:
        voter_hash = None
        try:
            with self.session_factory() as db:
                tokens = TokenService(db, clock=self.clock)
                claims = tokens.decode(token)
                voter_hash = hash_voter(claims.voting_id)
                tokens.check(claims, election_id)
                tokens.ensure_unspent(claims)
                ElectionService(db, clock=self.clock).require_open(election_id)
                tokens.consume(claims)

            route, outcome, ballot = self._write(election_id, claims.voting_id, payload)
        except TokenExpired as e:
            self._audit(EXPIRED, election_id, voter_hash, correlation_id, e)
            raise
        except (TokenInvalid, TokenAlreadyConsumed) as e:
            self._audit(TOKEN_REJECTED, election_id, voter_hash, correlation_id, e)
            raise
        except (ElectionNotFound, ElectionClosed) as e:
            self._audit(ELECTION_CLOSED, election_id, voter_hash, correlation_id, e)
            raise
        except ShardUnavailable as e:
            self._audit(SHARD_UNAVAILABLE, election_id, voter_hash, correlation_id, e)
            raise
        except SQLAlchemyError as e:
            logger.error(
                f"Control-plane database error during admission: {e}",
                extra={"election_id": election_id, "correlation_id": correlation_id},
            )
            error = ShardUnavailable("Admission is temporarily unavailable. Retry shortly.")
            self._audit(SHARD_UNAVAILABLE, election_id, voter_hash, correlation_id, error)
            raise error from e

        if outcome is InsertOutcome.ALREADY_EXISTS:
            error = AlreadyVoted()
            self._audit(
                DUPLICATE_REJECTED,
                election_id,
                voter_hash,
                correlation_id,
                error,
                partition_id=route.partition_id,
            )
            logger.info(
                "Duplicate ballot rejected",
                extra={"election_id": election_id, "correlation_id": correlation_id},
            )
            raise error

        self._audit(
            ADMITTED,
            election_id,
            voter_hash,
            correlation_id,
            receipt_id=ballot.receipt_id,
            partition_id=route.partition_id,
            topology_version=route.topology_version,
        )
        logger.info(
            "Ballot admitted",
            extra={
                "election_id": election_id,
                "partition_id": route.partition_id,
                "correlation_id": correlation_id,
            },
        )
        return AdmissionReceipt(
            receipt_id=ballot.receipt_id,
            election_id=election_id,
            submitted_at=ballot.submitted_at,
        )

    def _write(
        self, election_id: str, voting_id: str, payload: str
    ) -> tuple[Route, InsertOutcome, BallotWrite]:
        """Route the key and run the conditional insert under a lease.

        A route that went stale before the lease was taken is recomputed; a
        partition that keeps failing surfaces as ShardUnavailable.
        """
        submitted_at = self.clock()
        payload_hash = payload_digest(payload)
        ballot = BallotWrite(
            election_id=election_id,
            voting_id=voting_id,
            payload=payload,
            payload_hash=payload_hash,
            receipt_id=self.receipts.generate(election_id, voting_id, payload_hash, submitted_at),
            submitted_at=submitted_at,
        )

        for _ in range(self.route_attempts):
            route = self.router.route(election_id, voting_id)
            try:
                with self.router.lease(route):
                    outcome, ballot = self._insert(route.partition_id, ballot)
                return route, outcome, ballot
            except StaleRouteError as e:
                stale_route_retries.inc()
                logger.info(f"Re-routing write: {e}", extra={"election_id": election_id})

        raise ShardUnavailable("Shard topology is changing. Retry shortly.")

    def _insert(self, partition_id: str, ballot: BallotWrite) -> tuple[InsertOutcome, BallotWrite]:
        # The receipt is kept across transient retries so an insert that
        # committed before its acknowledgement was lost is recognised as ours.
        regenerated = False
        last_error: Optional[PartitionUnavailable] = None
        for attempt in range(self.write_attempts):
            if attempt:
                partition_write_retries.labels(partition_id=partition_id).inc()
                self.sleep(self.retry_backoff_seconds * (2 ** (attempt - 1)))
            try:
                store = self.partitions.get(partition_id)
                return store.conditional_insert(ballot), ballot
            except ReceiptCollision:
                if regenerated:
                    raise ShardUnavailable("Could not allocate a unique receipt. Retry shortly.")
                regenerated = True
                logger.warning("Receipt collision; regenerating", extra={"partition_id": partition_id})
                ballot = replace(
                    ballot,
                    receipt_id=self.receipts.generate(
                        ballot.election_id, ballot.voting_id, ballot.payload_hash, ballot.submitted_at
                    ),
                )
            except PartitionUnavailable as e:
                last_error = e
                logger.warning(
                    f"Partition write attempt {attempt + 1}/{self.write_attempts} failed: {e}",
                    extra={"partition_id": partition_id},
                )

        logger.error(
            f"Partition {partition_id} unavailable after {self.write_attempts} attempts: {last_error}",
            extra={"partition_id": partition_id},
        )
        raise ShardUnavailable(f"Ballot storage partition {partition_id} is unavailable. Retry shortly.")

    def _audit(
        self,
        kind: str,
        election_id: str,
        voter_hash: Optional[str],
        correlation_id: Optional[str],
        error: Optional[BallotGateError] = None,
        **detail,
    ) -> None:
        if error is not None:
            detail["error_code"] = error.error_code
        self.audit_ledger.record(
            AuditRecord(
                election_id=election_id,
                kind=kind,
                voter_hash=voter_hash,
                detail=detail,
                correlation_id=correlation_id,
                occurred_at=self.clock(),
            )
        )

    def _on_topology_change(self, previous: Topology, current: Topology) -> None:
        retired = sorted(set(previous.partitions) - set(current.partitions))
        logger.info(
            f"Admitting against topology v{current.version}",
            extra={"partitions": list(current.partitions), "retired_partitions": retired},
        )


# Global instance
_coordinator: Optional[AdmissionCoordinator] = None


def get_coordinator() -> AdmissionCoordinator:
    """Get or create the admission coordinator wired to the process singletons."""
    global _coordinator
    if _coordinator is None:
        from ballotgate_api.db.session import SessionLocal

        _coordinator = AdmissionCoordinator(
            session_factory=SessionLocal,
            router=get_router(),
            partitions=get_partition_registry(),
            audit_ledger=get_audit_ledger(),
        )
    return _coordinator
