"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SECRET_PREFIX = "dev-"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Control-plane database (identities, elections, tokens, audit)
    database_url: Optional[str] = None
    postgres_user: str = "ballotgate"
    postgres_password: str = "ballotgate_dev_password"
    postgres_db: str = "ballotgate"
    postgres_port: int = 5432

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # API
    environment: str = "development"
    secret_key: str = "dev-secret-key-change-in-production"

    # Ballot tokens
    token_signing_key: str = "dev-token-signing-key-change-in-production"
    token_algorithm: str = "HS256"
    token_ttl_seconds: int = 300
    token_supersede_prior: bool = True

    # Identity
    identity_salt: str = "dev-identity-salt-change-in-production"
    voter_id_key: str = "dev-voter-id-key-change-in-production"
    voter_id_scope: str = "scoped"  # scoped, global

    # Receipts
    receipt_key: str = "dev-receipt-key-change-in-production"

    # Sharding
    shard_strategy: str = "single"  # single, consistent_hash, election_scoped
    shard_partitions: dict[str, str] = {"p0": "sqlite:///./ballots-p0.db"}
    election_partitions: dict[str, list[str]] = {}
    shard_virtual_nodes: int = 64
    partition_timeout_seconds: float = 5.0
    partition_write_attempts: int = 3
    partition_retry_backoff_seconds: float = 0.05
    route_attempts: int = 3
    rebalance_drain_timeout_seconds: float = 30.0

    # Audit
    audit_spool_max_events: int = 10000
    anomaly_duplicate_threshold: int = 3
    anomaly_token_rejection_threshold: int = 5

    # Logging
    log_level: str = "INFO"

    # Rate Limiting
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 100
    rate_limit_ttl_seconds: int = 600  # TTL for rate limit keys in Redis

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    def validate_production_settings(self):
        """Validate settings for production environment."""
        env = self.environment.lower()
        if env in ("development", "test", "dev"):
            return

        secrets_to_check = {
            "SECRET_KEY": self.secret_key,
            "TOKEN_SIGNING_KEY": self.token_signing_key,
            "IDENTITY_SALT": self.identity_salt,
            "VOTER_ID_KEY": self.voter_id_key,
            "RECEIPT_KEY": self.receipt_key,
        }
        for name, value in secrets_to_check.items():
            if value.startswith(DEV_SECRET_PREFIX):
                raise ValueError(
                    f"{name} still uses the development default. "
                    "Set a unique secret for this deployment."
                )
        if self.voter_id_scope not in ("scoped", "global"):
            raise ValueError(f"VOTER_ID_SCOPE must be 'scoped' or 'global', got {self.voter_id_scope}")
        if not self.shard_partitions:
            raise ValueError("SHARD_PARTITIONS must name at least one partition")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
