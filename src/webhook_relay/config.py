"""Configuration management for the webhook relay."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "FieldReservations-Webhook/1.0"


class Settings(BaseSettings):
    """Webhook relay configuration loaded from environment variables.

    All settings can be overridden via environment variables with the
    WEBHOOK_RELAY_ prefix. For example:
        WEBHOOK_RELAY_STORAGE_BACKEND=qdrant
        WEBHOOK_RELAY_BATCH_SIZE=100

    Notes:
        - The in-memory backend loses queued deliveries on restart; using it
          with WEBHOOK_RELAY_ENV=production logs a warning.
        - claim_ttl_seconds must outlive the longest endpoint timeout (30s),
          otherwise a slow delivery could be claimed by a second worker.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: json for production, text for development",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Endpoint/delivery store backend",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL (qdrant backend only)",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="webhooks",
        min_length=1,
        description="Prefix for Qdrant collection names",
    )

    # Delivery
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        min_length=1,
        description="User-Agent header sent with every delivery",
    )
    batch_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum deliveries claimed and dispatched concurrently per pass",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=300.0,
        description="Seconds the background worker waits between idle passes",
    )
    claim_ttl_seconds: float = Field(
        default=60.0,
        ge=31.0,
        le=3600.0,
        description=(
            "Lease length of a claimed delivery. Must exceed the maximum "
            "endpoint timeout so live dispatches are never re-claimed."
        ),
    )

    # Endpoint registration
    max_endpoints_per_scope: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum registered endpoints per scope (tenant)",
    )
    probe_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=30.0,
        description="Timeout of the HEAD probe sent when registering with probe=True",
    )

    model_config = {
        "env_prefix": "WEBHOOK_RELAY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @model_validator(mode="after")
    def _warn_on_volatile_production_storage(self) -> "Settings":
        """Warn when production runs on the non-durable in-memory store."""
        if self.env == "production" and self.storage_backend == "memory":
            logger.warning(
                "In-memory webhook storage in production: queued deliveries "
                "are lost on restart. Set WEBHOOK_RELAY_STORAGE_BACKEND=qdrant."
            )
        return self

