"""Ballot receipts.

A receipt is returned to the voter and stored with the ballot. It is derived
with a keyed HMAC over the ballot and a random salt, so it reveals nothing
about the voter or the ballot contents and cannot be forged without the key.
"""

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Optional

from ballotgate_api.settings import get_settings

RECEIPT_PREFIX = "RCPT-"


def payload_digest(payload: str) -> str:
    """SHA-256 hex digest of a ballot payload."""
    return hashlib.sha256(payload.encode()).hexdigest()


class ReceiptGenerator:
    """Derive opaque receipt identifiers."""

    def __init__(self, receipt_key: Optional[str] = None):
        self._key = (receipt_key or get_settings().receipt_key).encode()

    def generate(
        self,
        election_id: str,
        voting_id: str,
        payload_hash: str,
        submitted_at: datetime,
        salt: Optional[str] = None,
    ) -> str:
        salt = salt or secrets.token_hex(16)
        message = "|".join(
            [election_id, voting_id, payload_hash, submitted_at.isoformat(), salt]
        ).encode()
        digest = hmac.new(self._key, message, hashlib.sha256).hexdigest()
        return f"{RECEIPT_PREFIX}{digest[:32].upper()}"
