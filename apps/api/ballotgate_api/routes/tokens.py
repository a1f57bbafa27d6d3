"""Token issuance endpoint, called by the identity gateway."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ballotgate_api.db.session import get_db
from ballotgate_api.elections.service import ElectionService
from ballotgate_api.identity.resolver import IdentityAssertion, IdentityResolver
from ballotgate_api.tokens.service import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["tokens"])


class AssertionModel(BaseModel):
    """Identity verified by an upstream authentication provider."""

    provider: str = Field(..., min_length=1, max_length=64)
    subject: str = Field(..., min_length=1, max_length=255)
    attributes: dict = Field(..., description="Verified identity attributes")
    contact_email: Optional[str] = Field(None, max_length=255)
    contact_phone: Optional[str] = Field(None, max_length=64)


class TokenRequest(BaseModel):
    """Token issuance request."""

    assertion: AssertionModel
    election_id: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    """Issued ballot token."""

    token: str
    expires_at: datetime
    election_id: str


@router.post("/tokens", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def issue_token(
    request_data: TokenRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Resolve the asserted identity and issue a single-use ballot token.

    The election is checked first so no identifier is ever minted for an
    election that is unknown or not accepting ballots.
    """
    ElectionService(db).require_open(request_data.election_id)
    assertion = IdentityAssertion(
        provider=request_data.assertion.provider,
        subject=request_data.assertion.subject,
        attributes=request_data.assertion.attributes,
        contact_email=request_data.assertion.contact_email,
        contact_phone=request_data.assertion.contact_phone,
    )
    try:
        resolved = IdentityResolver(db).resolve(assertion, request_data.election_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    issued = TokenService(db).issue(resolved["voting_id"], request_data.election_id)

    logger.info(
        "Ballot token issued",
        extra={
            "election_id": request_data.election_id,
            "correlation_id": getattr(request.state, "correlation_id", None),
        },
    )
    return TokenResponse(**issued)
