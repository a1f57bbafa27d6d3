"""Ballot submission endpoint.

Declared as a plain ``def`` so it runs in the threadpool: once a write has
been dispatched it completes and is audited even if the client disconnects.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from ballotgate_api.admission.coordinator import AdmissionCoordinator, get_coordinator

router = APIRouter(prefix="/v1", tags=["ballots"])

MAX_PAYLOAD_LENGTH = 65536


class BallotRequest(BaseModel):
    """Ballot submission request."""

    token: str = Field(..., min_length=1, max_length=4096)
    payload: str = Field(..., min_length=1, max_length=MAX_PAYLOAD_LENGTH, description="Opaque ballot")


class BallotResponse(BaseModel):
    """Ballot receipt."""

    receipt_id: str
    election_id: str
    submitted_at: datetime


@router.post(
    "/elections/{election_id}/ballots",
    response_model=BallotResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_ballot(
    election_id: str,
    request_data: BallotRequest,
    request: Request,
    coordinator: AdmissionCoordinator = Depends(get_coordinator),
):
    """Admit a ballot and return its receipt."""
    receipt = coordinator.admit(
        election_id,
        request_data.token,
        request_data.payload,
        correlation_id=getattr(request.state, "correlation_id", None),
    )
    return BallotResponse(
        receipt_id=receipt.receipt_id,
        election_id=receipt.election_id,
        submitted_at=receipt.submitted_at,
    )
