"""
Module: settings.py
Description: Application configuration using pydantic-settings.

Configures the event bus from environment variables with validation
and defaults. Supports .env files for local development.

Key Components:
- DeliveryConfig: Tuning knobs of the delivery worker (poll cadence,
  batch size, retry budget and backoff bounds)
- Settings: Process-wide settings (storage backend, tables, webhooks)

Dependencies: pydantic, pydantic-settings
Author: Event Bus Team
"""

import re
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeliveryConfig(BaseModel):
    """
    Delivery worker configuration.

    Attributes:
        poll_interval_ms: Idle spacing between poll cycles
        batch_size: Maximum deliveries claimed per cycle
        max_attempts: Attempts before a delivery is permanently failed
        retry_delay_ms: Base unit of the exponential backoff
        max_delay_ms: Ceiling of the exponential backoff
        notify_timeout_seconds: Upper bound on a single notifier call
    """

    poll_interval_ms: int = Field(default=5000, ge=1, description="Poll interval in milliseconds")
    batch_size: int = Field(default=100, ge=1, description="Deliveries claimed per cycle")
    max_attempts: int = Field(default=20, ge=1, description="Delivery attempts before permanent failure")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Backoff base delay in milliseconds")
    max_delay_ms: int = Field(default=3_600_000, ge=0, description="Backoff ceiling in milliseconds")
    notify_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single subscriber notification"
    )

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "DeliveryConfig":
        """Ensure the backoff ceiling is not below its base unit."""
        if self.max_delay_ms < self.retry_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to retry_delay_ms")
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application settings
    app_name: str = Field(default="Event Bus", description="Application name")
    app_version: str = Field(default="0.3.0", description="Application version")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage settings
    storage_backend: str = Field(
        default="memory",
        description="Delivery store backend: 'memory' or 'dynamodb'"
    )
    aws_region: str = Field(default="us-east-1", description="AWS region")
    dynamodb_endpoint_url: Optional[str] = Field(
        default=None,
        description="DynamoDB endpoint override (DynamoDB Local)"
    )
    events_table_name: str = Field(default="eventbus-events", description="DynamoDB events table")
    subscriptions_table_name: str = Field(
        default="eventbus-subscriptions",
        description="DynamoDB subscriptions table"
    )
    deliveries_table_name: str = Field(
        default="eventbus-deliveries",
        description="DynamoDB deliveries table"
    )

    # Notifier settings
    webhook_url_template: Optional[str] = Field(
        default=None,
        description="Webhook URL template, e.g. https://hooks.example.com/{connection_id}"
    )
    webhook_endpoints: Dict[str, str] = Field(
        default_factory=dict,
        description="Explicit connection_id -> webhook URL mapping"
    )

    # Delivery worker settings
    poll_interval_ms: int = Field(default=5000, ge=1)
    batch_size: int = Field(default=100, ge=1)
    max_attempts: int = Field(default=20, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=3_600_000, ge=0)
    notify_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator('events_table_name', 'subscriptions_table_name', 'deliveries_table_name')
    @classmethod
    def validate_table_names(cls, v: str) -> str:
        """Validate DynamoDB table names."""
        if not v or not isinstance(v, str):
            raise ValueError("Table name must be a non-empty string")

        if not re.match(r'^[a-zA-Z0-9_.-]+$', v):
            raise ValueError(
                "Table name must contain only letters, numbers, dots, hyphens, and underscores"
            )

        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Validate the storage backend name."""
        backend = v.lower()
        if backend not in ('memory', 'dynamodb'):
            raise ValueError("storage_backend must be 'memory' or 'dynamodb'")
        return backend

    @field_validator('webhook_url_template')
    @classmethod
    def validate_webhook_url_template(cls, v: Optional[str]) -> Optional[str]:
        """Validate the webhook template is an HTTP(S) URL with a connection placeholder."""
        if v is None:
            return v
        if not v.startswith(('http://', 'https://')):
            raise ValueError("webhook_url_template must be a valid HTTP/HTTPS URL")
        if '{connection_id}' not in v:
            raise ValueError("webhook_url_template must contain '{connection_id}'")
        return v

    def delivery_config(self) -> DeliveryConfig:
        """Build the worker configuration from the flat settings."""
        return DeliveryConfig(
            poll_interval_ms=self.poll_interval_ms,
            batch_size=self.batch_size,
            max_attempts=self.max_attempts,
            retry_delay_ms=self.retry_delay_ms,
            max_delay_ms=self.max_delay_ms,
            notify_timeout_seconds=self.notify_timeout_seconds,
        )


# Global settings instance
settings = Settings()
