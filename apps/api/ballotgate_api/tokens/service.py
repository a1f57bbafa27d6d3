"""Ballot token issuance, validation and single-use consumption.

Tokens are HS256 JWTs binding a voting identifier to one election. Only the
SHA-256 of the token nonce is stored server-side; consumption is a conditional
UPDATE on that row, so a nonce can be spent exactly once.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from jose import jwt
from jose.exceptions import JWTError
from sqlalchemy.orm import Session

from ballotgate_api.elections.service import ElectionService
from ballotgate_api.errors import TokenAlreadyConsumed, TokenExpired, TokenInvalid
from ballotgate_api.models import IssuedToken, VotingIdentifier
from ballotgate_api.settings import get_settings
from ballotgate_api.utils.clock import utcnow
from ballotgate_api.utils.metrics import tokens_issued

logger = logging.getLogger(__name__)

TOKEN_TYPE = "ballot"


def hash_nonce(nonce: str) -> str:
    return hashlib.sha256(nonce.encode()).hexdigest()


def to_epoch(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a ballot token."""

    voting_id: str
    election_id: str
    nonce: str
    expires_at: datetime

    @property
    def nonce_hash(self) -> str:
        return hash_nonce(self.nonce)


class TokenService:
    """Mint and check ballot tokens."""

    def __init__(
        self,
        db: Session,
        signing_key: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        supersede_prior: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize token service with database session."""
        settings = get_settings()
        self.db = db
        self.signing_key = signing_key or settings.token_signing_key
        self.algorithm = settings.token_algorithm
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.token_ttl_seconds
        self.supersede_prior = (
            supersede_prior if supersede_prior is not None else settings.token_supersede_prior
        )
        self.clock = clock

    def issue(self, voting_id: str, election_id: str) -> dict:
        """Issue a token for (voting_id, election_id) if the election is open.

        Active tokens previously issued for the same pair are superseded.
        """
        ElectionService(self.db, clock=self.clock).require_open(election_id)

        issued_at = self.clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=self.ttl_seconds)
        nonce = secrets.token_urlsafe(24)

        if self.supersede_prior:
            # Row lock on the identifier serializes issuance for one voter
            self.db.query(VotingIdentifier).filter(
                VotingIdentifier.voting_id == voting_id
            ).with_for_update().first()
            superseded = (
                self.db.query(IssuedToken)
                .filter(
                    IssuedToken.voting_id == voting_id,
                    IssuedToken.election_id == election_id,
                    IssuedToken.status == "active",
                )
                .update({"status": "superseded"}, synchronize_session=False)
            )
            if superseded:
                logger.info(f"Superseded {superseded} active token(s)", extra={"election_id": election_id})

        self.db.add(
            IssuedToken(
                nonce_hash=hash_nonce(nonce),
                voting_id=voting_id,
                election_id=election_id,
                status="active",
                issued_at=issued_at,
                expires_at=expires_at,
            )
        )
        self.db.commit()

        token = jwt.encode(
            {
                "sub": voting_id,
                "eid": election_id,
                "jti": nonce,
                "iat": to_epoch(issued_at),
                "exp": to_epoch(expires_at),
                "typ": TOKEN_TYPE,
            },
            self.signing_key,
            algorithm=self.algorithm,
        )
        tokens_issued.inc()
        return {"token": token, "expires_at": expires_at, "election_id": election_id}

    def validate(self, token: str, election_id: str) -> TokenClaims:
        """Check signature, claims, target election and expiry.

        Does not touch server-side state; see ``consume``.
        """
        claims = self.decode(token)
        self.check(claims, election_id)
        return claims

    def decode(self, token: str) -> TokenClaims:
        """Verify the signature and claim shape."""
        try:
            payload = jwt.decode(
                token,
                self.signing_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as e:
            raise TokenInvalid("Ballot token signature or format is invalid") from e

        if payload.get("typ") != TOKEN_TYPE:
            raise TokenInvalid("Not a ballot token")
        voting_id = payload.get("sub")
        token_election = payload.get("eid")
        nonce = payload.get("jti")
        exp = payload.get("exp")
        if not isinstance(voting_id, str) or not isinstance(token_election, str):
            raise TokenInvalid("Ballot token is missing its subject or election")
        if not isinstance(nonce, str) or not isinstance(exp, int):
            raise TokenInvalid("Ballot token is missing its nonce or expiry")
        return TokenClaims(
            voting_id=voting_id,
            election_id=token_election,
            nonce=nonce,
            expires_at=from_epoch(exp),
        )

    def check(self, claims: TokenClaims, election_id: str) -> None:
        """Check the target election and expiry of decoded claims."""
        if claims.election_id != election_id:
            raise TokenInvalid("Ballot token was issued for a different election")
        if self.clock() >= claims.expires_at:
            raise TokenExpired(f"Ballot token expired at {claims.expires_at.isoformat()}Z")

    def ensure_unspent(self, claims: TokenClaims) -> None:
        """Reject a consumed, superseded or unknown nonce without spending it."""
        row = self.db.query(IssuedToken).filter(IssuedToken.nonce_hash == claims.nonce_hash).first()
        if row is None or row.status == "superseded":
            raise TokenInvalid("Ballot token was superseded or never issued")
        if row.status == "consumed":
            raise TokenAlreadyConsumed("Ballot token has already been used")

    def consume(self, claims: TokenClaims) -> None:
        """Atomically spend the token nonce. Never retried by callers."""
        consumed = (
            self.db.query(IssuedToken)
            .filter(
                IssuedToken.nonce_hash == claims.nonce_hash,
                IssuedToken.voting_id == claims.voting_id,
                IssuedToken.election_id == claims.election_id,
                IssuedToken.status == "active",
            )
            .update({"status": "consumed", "consumed_at": self.clock()}, synchronize_session=False)
        )
        self.db.commit()
        if consumed == 1:
            return

        row = self.db.query(IssuedToken).filter(IssuedToken.nonce_hash == claims.nonce_hash).first()
        if row is not None and row.status == "consumed":
            raise TokenAlreadyConsumed("Ballot token has already been used")
        raise TokenInvalid("Ballot token was superseded or never issued")

    def purge_expired(self, before: Optional[datetime] = None) -> int:
        """Delete token rows that expired before ``before``.

        Safe because an expired token is rejected before its row is consulted.
        """
        cutoff = before or self.clock()
        removed = (
            self.db.query(IssuedToken)
            .filter(IssuedToken.expires_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return removed
