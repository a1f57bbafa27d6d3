"""Admin routes for election mirroring and operational visibility."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from kombu.exceptions import OperationalError as BrokerError
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ballotgate_api.audit.ledger import AuditLedger, AuditQueryService, get_audit_ledger
from ballotgate_api.audit.reconciliation import reconcile_election
from ballotgate_api.celery_client import DETECT_ANOMALIES_TASK, get_celery_app
from ballotgate_api.db.session import get_db
from ballotgate_api.elections.service import ElectionService
from ballotgate_api.errors import PartitionUnavailable
from ballotgate_api.models import AnomalyFlag
from ballotgate_api.settings import get_settings
from ballotgate_api.sharding.rebalancer import RebalanceError, Rebalancer
from ballotgate_api.sharding.router import ShardRouter, get_router
from ballotgate_api.sharding.strategies import build_strategy
from ballotgate_api.storage.partition import PartitionRegistry, PartitionStore, get_partition_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ElectionUpsert(BaseModel):
    """Election descriptor pushed by the lifecycle service."""

    display_name: str = Field(..., min_length=1, max_length=255)
    status: str = Field(..., description="draft, open or closed")
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None


class ElectionResponse(BaseModel):
    """Election response."""

    election_id: str
    display_name: str
    status: str
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    updated_at: datetime

    class Config:
        from_attributes = True


@router.put("/elections/{election_id}", response_model=ElectionResponse)
def upsert_election(
    election_id: str,
    election_data: ElectionUpsert,
    db: Session = Depends(get_db),
):
    """Create or update the local mirror of an election descriptor."""
    try:
        election = ElectionService(db).upsert(
            election_id,
            election_data.display_name,
            election_data.status,
            opens_at=election_data.opens_at,
            closes_at=election_data.closes_at,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    db.commit()
    db.refresh(election)
    logger.info(f"Election {election_id} mirrored with status {election.status}")
    return election


@router.get("/topology")
def get_topology(shard_router: ShardRouter = Depends(get_router)):
    """Current (and pending) shard topology."""
    return shard_router.describe()


class RebalanceRequest(BaseModel):
    """Target topology for a rebalance."""

    strategy: str = Field(..., description="single, consistent_hash or election_scoped")
    partitions: list[str] = Field(..., min_length=1, description="Partition ids of the new topology")
    new_partitions: dict[str, str] = Field(default_factory=dict, description="Partition id to database URL")
    election_partitions: dict[str, list[str]] = Field(default_factory=dict)


@router.post("/topology/rebalance")
def rebalance_topology(
    rebalance_data: RebalanceRequest,
    shard_router: ShardRouter = Depends(get_router),
    partitions: PartitionRegistry = Depends(get_partition_registry),
):
    """Move to a new topology, relocating ballots whose owner changes.

    The committed topology is persisted; other instances pick it up on restart.
    """
    settings = get_settings()
    target = settings.model_copy(
        update={
            "shard_strategy": rebalance_data.strategy,
            "election_partitions": rebalance_data.election_partitions,
        }
    )
    try:
        strategy = build_strategy(target, rebalance_data.partitions)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    new_stores = [
        PartitionStore.from_url(partition_id, url, settings.partition_timeout_seconds)
        for partition_id, url in rebalance_data.new_partitions.items()
    ]
    rebalancer = Rebalancer(shard_router, partitions, settings.rebalance_drain_timeout_seconds)
    try:
        return rebalancer.rebalance(strategy, new_stores)
    except (RebalanceError, RuntimeError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PartitionUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"Rebalance could not persist the topology: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control-plane database unavailable; topology unchanged.",
        )


@router.get("/audit/status")
def get_audit_status(ledger: AuditLedger = Depends(get_audit_ledger)):
    """Audit ledger health; attempts redelivery of spooled events first."""
    redelivered = ledger.flush()
    return {**ledger.status(), "redelivered": redelivered}


@router.get("/elections/{election_id}/reconciliation")
def get_reconciliation(
    election_id: str,
    db: Session = Depends(get_db),
    shard_router: ShardRouter = Depends(get_router),
    partitions: PartitionRegistry = Depends(get_partition_registry),
):
    """Ballot counts per partition against admitted audit events."""
    ElectionService(db).get(election_id)
    report = reconcile_election(db, partitions, election_id, shard_router.topology.strategy)
    integrity_ok, integrity_error = AuditQueryService(db).verify_integrity(election_id)
    return {**report, "audit_integrity": {"valid": integrity_ok, "error": integrity_error}}


@router.get("/elections/{election_id}/anomalies")
def list_anomalies(election_id: str, db: Session = Depends(get_db)):
    """Anomaly flags raised for an election."""
    flags = (
        db.query(AnomalyFlag)
        .filter(AnomalyFlag.election_id == election_id)
        .order_by(AnomalyFlag.last_seen_at.desc())
        .all()
    )
    return {
        "election_id": election_id,
        "flags": [
            {
                "voter_hash": flag.voter_hash,
                "rule": flag.rule,
                "event_count": flag.event_count,
                "first_seen_at": flag.first_seen_at,
                "last_seen_at": flag.last_seen_at,
            }
            for flag in flags
        ],
    }


@router.post("/elections/{election_id}/anomaly-scan", status_code=status.HTTP_202_ACCEPTED)
def enqueue_anomaly_scan(election_id: str, request: Request, db: Session = Depends(get_db)):
    """Enqueue an anomaly scan on the worker."""
    ElectionService(db).get(election_id)
    correlation_id = getattr(request.state, "correlation_id", None)
    try:
        task = get_celery_app().send_task(DETECT_ANOMALIES_TASK, args=[election_id])
    except (ImportError, ConnectionError, BrokerError) as e:
        logger.error(
            f"Failed to enqueue anomaly scan: {e}",
            extra={"election_id": election_id, "correlation_id": correlation_id},
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "failed",
                "error_code": "WORKER_UNAVAILABLE",
                "detail": "Task broker unavailable. Retry later.",
            },
            headers={"Retry-After": "30"},
        )

    logger.info(
        f"Enqueued anomaly scan task: {task.id}",
        extra={"election_id": election_id, "correlation_id": correlation_id},
    )
    return {"status": "queued", "task_id": task.id, "election_id": election_id}
