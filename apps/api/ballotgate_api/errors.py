"""Admission error taxonomy.

Every voter-facing outcome other than success is one of these exceptions. The
``error_code`` is the stable machine-readable kind returned to clients; the
HTTP status is used by the API exception handler.
"""

from typing import Optional


class BallotGateError(Exception):
    """Base class for errors with a stable machine-readable kind."""

    error_code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.__class__.__doc__
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {
            "status": "failed",
            "error_code": self.error_code,
            "detail": self.detail,
        }


class IdentityConflict(BallotGateError):
    """Verified identity attributes are already bound to a different account."""

    error_code = "IDENTITY_CONFLICT"
    http_status = 409


class TokenInvalid(BallotGateError):
    """Ballot token is malformed, tampered with, superseded or for another election."""

    error_code = "TOKEN_INVALID"
    http_status = 401


class TokenExpired(BallotGateError):
    """Ballot token has expired."""

    error_code = "TOKEN_EXPIRED"
    http_status = 401


class TokenAlreadyConsumed(BallotGateError):
    """Ballot token has already been used."""

    error_code = "TOKEN_ALREADY_CONSUMED"
    http_status = 409


class ElectionNotFound(BallotGateError):
    """Election is not known to this service."""

    error_code = "ELECTION_NOT_FOUND"
    http_status = 404


class ElectionClosed(BallotGateError):
    """Election is not open for voting."""

    error_code = "ELECTION_CLOSED"
    http_status = 403


class AlreadyVoted(BallotGateError):
    """A ballot has already been recorded for this voter in this election."""

    error_code = "ALREADY_VOTED"
    http_status = 409


class ShardUnavailable(BallotGateError):
    """Ballot storage for this voter is temporarily unavailable."""

    error_code = "SHARD_UNAVAILABLE"
    http_status = 503
    retryable = True


class AuditDegraded(BallotGateError):
    """Audit ledger could not persist an event."""

    error_code = "AUDIT_DEGRADED"
    http_status = 503


class PartitionUnavailable(Exception):
    """A partition request failed with a transient storage error."""

    def __init__(self, partition_id: str, cause: Optional[BaseException] = None):
        self.partition_id = partition_id
        self.cause = cause
        super().__init__(f"Partition {partition_id} unavailable: {cause}")


class StaleRouteError(Exception):
    """A route was computed against a topology that is no longer current."""

    def __init__(self, route_version: int, current_version: int):
        self.route_version = route_version
        self.current_version = current_version
        super().__init__(
            f"Route computed for topology v{route_version}, current is v{current_version}"
        )


class ReceiptCollision(Exception):
    """Generated receipt identifier already exists on the partition."""
