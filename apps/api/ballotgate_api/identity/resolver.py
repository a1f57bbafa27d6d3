"""Identity resolution to stable voting identifiers."""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ballotgate_api.errors import IdentityConflict
from ballotgate_api.models import IdentityRecord, VotingIdentifier
from ballotgate_api.settings import get_settings

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


@dataclass
class IdentityAssertion:
    """Identity verified upstream by an authentication provider."""

    provider: str
    subject: str
    attributes: dict = field(default_factory=dict)
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None


def canonicalize_attributes(attributes: dict) -> str:
    """Canonical JSON of verified attributes (trimmed, case-folded strings)."""

    def normalize(value):
        if isinstance(value, str):
            return " ".join(value.split()).casefold()
        if isinstance(value, dict):
            return {str(k).casefold(): normalize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [normalize(v) for v in value]
        return value

    return json.dumps(normalize(attributes), sort_keys=True, separators=(",", ":"))


class IdentityResolver:
    """Resolve verified identities to voting identifiers."""

    def __init__(
        self,
        db: Session,
        identity_salt: Optional[str] = None,
        voter_id_key: Optional[str] = None,
        scope_mode: Optional[str] = None,
    ):
        """Initialize resolver with database session."""
        settings = get_settings()
        self.db = db
        self.identity_salt = (identity_salt or settings.identity_salt).encode()
        self.voter_id_key = (voter_id_key or settings.voter_id_key).encode()
        self.scope_mode = scope_mode or settings.voter_id_scope
        if self.scope_mode not in ("scoped", "global"):
            raise ValueError(f"Unknown voter id scope: {self.scope_mode}")

    def hash_attributes(self, attributes: dict) -> str:
        """Salted hash identifying the human behind the verified attributes."""
        if not attributes:
            raise ValueError("Verified identity attributes are required")
        canonical = canonicalize_attributes(attributes)
        return hmac.new(self.identity_salt, canonical.encode(), hashlib.sha256).hexdigest()

    def derive_voting_id(self, human_hash: str, scope: str) -> str:
        """Keyed derivation, so identifiers in different scopes are unlinkable."""
        message = f"{human_hash}:{scope}".encode()
        return hmac.new(self.voter_id_key, message, hashlib.sha256).hexdigest()

    def scope_for(self, election_id: str) -> str:
        return election_id if self.scope_mode == "scoped" else GLOBAL_SCOPE

    def resolve(self, assertion: IdentityAssertion, election_id: str) -> dict:
        """Return the voting identifier for ``assertion``, creating it once.

        Raises IdentityConflict when the attributes belong to another account,
        or when the account presents attributes different from those on record.
        """
        human_hash = self.hash_attributes(assertion.attributes)
        record = self.resolve_identity_record(assertion, human_hash)
        scope = self.scope_for(election_id)
        voting_identifier = self.resolve_voting_identifier(record, scope)
        return {
            "voting_id": voting_identifier.voting_id,
            "identity_record_id": record.id,
            "scope": scope,
        }

    def resolve_identity_record(self, assertion: IdentityAssertion, human_hash: str) -> IdentityRecord:
        record = self._find_account(assertion.provider, assertion.subject)
        if record:
            if not hmac.compare_digest(record.human_hash, human_hash):
                logger.error(
                    "Account presented verified attributes that differ from the record",
                    extra={"identity_record_id": record.id, "provider": assertion.provider},
                )
                raise IdentityConflict(
                    "Verified attributes differ from those registered for this account"
                )
            return record

        owner = self.db.query(IdentityRecord).filter(IdentityRecord.human_hash == human_hash).first()
        if owner:
            self._raise_duplicate_human(owner, assertion)

        record = IdentityRecord(
            provider=assertion.provider,
            provider_subject=assertion.subject,
            human_hash=human_hash,
            contact_email=assertion.contact_email,
            contact_phone=assertion.contact_phone,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent registration; re-read whoever won.
            self.db.rollback()
            record = self._find_account(assertion.provider, assertion.subject)
            if record and hmac.compare_digest(record.human_hash, human_hash):
                return record
            owner = self.db.query(IdentityRecord).filter(IdentityRecord.human_hash == human_hash).first()
            if owner:
                self._raise_duplicate_human(owner, assertion)
            raise
        logger.info("Identity record created", extra={"identity_record_id": record.id})
        return record

    def resolve_voting_identifier(self, record: IdentityRecord, scope: str) -> VotingIdentifier:
        existing = self._find_voting_identifier(record.human_hash, scope)
        if existing:
            return existing

        voting_identifier = VotingIdentifier(
            voting_id=self.derive_voting_id(record.human_hash, scope),
            human_hash=record.human_hash,
            scope=scope,
            identity_record_id=record.id,
        )
        self.db.add(voting_identifier)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_voting_identifier(record.human_hash, scope)
            if existing:
                return existing
            raise
        return voting_identifier

    def _find_account(self, provider: str, subject: str) -> Optional[IdentityRecord]:
        return (
            self.db.query(IdentityRecord)
            .filter(
                IdentityRecord.provider == provider,
                IdentityRecord.provider_subject == subject,
            )
            .first()
        )

    def _find_voting_identifier(self, human_hash: str, scope: str) -> Optional[VotingIdentifier]:
        return (
            self.db.query(VotingIdentifier)
            .filter(
                VotingIdentifier.human_hash == human_hash,
                VotingIdentifier.scope == scope,
            )
            .first()
        )

    def _raise_duplicate_human(self, owner: IdentityRecord, assertion: IdentityAssertion):
        logger.error(
            "Duplicate human registration across accounts",
            extra={
                "existing_identity_record_id": owner.id,
                "existing_provider": owner.provider,
                "provider": assertion.provider,
            },
        )
        raise IdentityConflict(
            "These verified attributes are already registered to a different account"
        )
