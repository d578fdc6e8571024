"""Custody subsystem configuration."""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class CustodyConfig(BaseSettings):
    """Runtime config for the custody subsystem.

    Every field can be set from the environment with the ``CUSTODY_``
    prefix, e.g. ``CUSTODY_CODE_TTL_DAYS=14``.
    """

    model_config = SettingsConfigDict(env_prefix="CUSTODY_")

    database_url: str = "sqlite+aiosqlite:///./custody.db"

    # Release codes
    code_index_key: SecretStr
    code_digits: int = Field(default=6, ge=4, le=9)
    code_ttl_days: int = Field(default=30, gt=0)
    code_max_generation_attempts: int = Field(default=100, gt=0)
    code_hash_rounds: int = Field(default=29000, gt=0)

    # Verification rate limiting
    max_failed_attempts: int = Field(default=5, gt=0)
    lockout_minutes: int = Field(default=30, gt=0)

    # Audit retention
    audit_retention_days: int = Field(default=90, gt=0)
    retention_enabled: bool = True
    retention_interval_seconds: int = Field(default=3600, gt=0)

    # Outbound notifications
    notification_url: str | None = None
    notification_timeout_seconds: float = Field(default=5.0, gt=0)

    # Optimistic concurrency
    conflict_max_attempts: int = Field(default=3, gt=0)
    conflict_backoff_seconds: float = Field(default=0.05, ge=0)
