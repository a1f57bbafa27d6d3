"""API key authentication with prefix+digest lookup."""

import hashlib
import hmac
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from ballotgate_api.models import ApiClient
from ballotgate_api.settings import get_settings
from ballotgate_api.utils.clock import utcnow

KEY_PREFIX_LENGTH = 8


def compute_key_prefix(raw_key: str) -> str:
    """Compute prefix (first 8 chars) of API key."""
    return raw_key[:KEY_PREFIX_LENGTH] if len(raw_key) >= KEY_PREFIX_LENGTH else raw_key


def compute_key_digest(raw_key: str) -> str:
    """Compute HMAC-SHA256 digest of API key."""
    secret = get_settings().secret_key.encode()
    return hmac.new(secret, raw_key.encode(), hashlib.sha256).hexdigest()


def generate_api_key() -> str:
    """New random API key. Only its prefix and digest are ever stored."""
    return f"bg_{secrets.token_urlsafe(32)}"


def get_client_by_api_key(db: Session, api_key: str) -> Optional[ApiClient]:
    """Get the active client owning ``api_key``, or None."""
    if not api_key or len(api_key) < KEY_PREFIX_LENGTH:
        return None

    prefix = compute_key_prefix(api_key)
    digest = compute_key_digest(api_key)

    candidates = (
        db.query(ApiClient)
        .filter(
            ApiClient.prefix == prefix,
            ApiClient.is_active == True,  # noqa: E712
            ApiClient.revoked_at.is_(None),
        )
        .all()
    )
    for client in candidates:
        # Constant-time comparison of digest
        if hmac.compare_digest(client.digest, digest):
            client.last_used_at = utcnow()
            db.commit()
            return client
    return None
