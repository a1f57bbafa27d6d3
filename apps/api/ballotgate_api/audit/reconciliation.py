"""Reconcile stored ballots against admission audit events."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ballotgate_api.audit.events import ADMITTED
from ballotgate_api.audit.ledger import AuditQueryService
from ballotgate_api.errors import PartitionUnavailable
from ballotgate_api.sharding.strategies import PlacementStrategy
from ballotgate_api.storage.partition import PartitionRegistry

logger = logging.getLogger(__name__)


def reconcile_election(
    db: Session,
    partitions: PartitionRegistry,
    election_id: str,
    owner: Optional[PlacementStrategy] = None,
) -> dict:
    """Compare ballot counts across partitions with ``admitted`` events.

    With ``owner`` (the current placement) a partition only counts the keys it
    owns, so a relocated ballot is counted once even before its old copy is
    purged. ``consistent`` is None when a partition could not be counted.
    """
    ballots_by_partition = {}
    unavailable = []
    for store in partitions.stores():
        try:
            ballots_by_partition[store.partition_id] = store.count_ballots(election_id, owner)
        except PartitionUnavailable as e:
            logger.error(f"Reconciliation could not count partition {store.partition_id}: {e}")
            unavailable.append(store.partition_id)

    events_by_kind = AuditQueryService(db).count_by_kind(election_id)
    admitted_events = events_by_kind.get(ADMITTED, 0)
    ballots = sum(ballots_by_partition.values())

    consistent = None if unavailable else ballots == admitted_events
    if consistent is False:
        logger.error(
            f"Reconciliation mismatch: {ballots} ballots vs {admitted_events} admitted events",
            extra={"election_id": election_id},
        )

    return {
        "election_id": election_id,
        "ballots": ballots,
        "ballots_by_partition": ballots_by_partition,
        "unavailable_partitions": unavailable,
        "admitted_events": admitted_events,
        "attempt_events": sum(events_by_kind.values()),
        "events_by_kind": events_by_kind,
        "consistent": consistent,
    }
