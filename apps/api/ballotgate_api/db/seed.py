"""Seed data for development and testing."""

from datetime import timedelta

from sqlalchemy.orm import Session

from ballotgate_api.auth.api_key import compute_key_digest, compute_key_prefix
from ballotgate_api.auth.scopes import ADMIN, TOKENS_ISSUE, format_scopes
from ballotgate_api.elections.service import ElectionService
from ballotgate_api.models import ApiClient
from ballotgate_api.utils.clock import utcnow

DEMO_ELECTION_ID = "demo-2026"
DEMO_GATEWAY_KEY = "bg_demo-gateway-key-12345"
DEMO_ADMIN_KEY = "bg_demo-admin-key-67890"


def seed_client(db: Session, label: str, api_key: str, scopes: list[str]) -> ApiClient:
    """Create an API client for ``api_key`` unless one with ``label`` exists."""
    client = db.query(ApiClient).filter(ApiClient.label == label).first()
    if client:
        print(f"✓ API client already exists: {label}")
        return client

    client = ApiClient(
        label=label,
        prefix=compute_key_prefix(api_key),
        digest=compute_key_digest(api_key),
        scopes=format_scopes(scopes),
        is_active=True,
    )
    db.add(client)
    db.commit()
    print(f"✓ Created API client: {label}")
    print(f"  API Key: {api_key}")
    return client


def seed_election(db: Session):
    """Seed an open demo election running for a week."""
    now = utcnow()
    ElectionService(db).upsert(
        DEMO_ELECTION_ID,
        "Demo Election",
        "open",
        opens_at=now - timedelta(hours=1),
        closes_at=now + timedelta(days=7),
    )
    db.commit()
    print(f"✓ Election ready: {DEMO_ELECTION_ID}")


def seed_all(db: Session):
    """Seed all data."""
    print("Seeding database...")
    seed_client(db, "demo-gateway", DEMO_GATEWAY_KEY, [TOKENS_ISSUE])
    seed_client(db, "demo-admin", DEMO_ADMIN_KEY, [ADMIN])
    seed_election(db)
    print("✓ Seeding complete!")
