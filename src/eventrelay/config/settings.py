"""
Module: settings.py
Description: Delivery configuration using pydantic-settings.

Configures retry, queue, network and coordinator behavior from
environment variables (prefix EVENTRELAY_) with validation and
defaults. Supports .env files for local development.

Components never read the module-level ``settings`` instance on their
own; it is a convenience default that callers pass in explicitly.
"""

import re
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeliverySettings(BaseSettings):
    """Delivery settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EVENTRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application settings
    app_name: str = Field(default="eventrelay", description="Application name")
    app_version: str = Field(default="0.3.0", description="Application version")
    log_level: str = Field(default="INFO", description="Logging level")

    # Endpoint settings
    endpoint_url: Optional[str] = Field(
        default=None,
        description="Default delivery endpoint (webhook URL)"
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Timeout in seconds for a single delivery attempt"
    )

    # Retry settings
    max_retries: int = Field(default=3, ge=0, le=100, description="Retries after the first attempt")
    initial_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Upper bound for any retry delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff multiplier")
    exponential_backoff: bool = Field(default=True, description="Use exponential instead of fixed delays")
    jitter: bool = Field(default=True, description="Sample delays from [0.75x, 1.25x]")

    # Queue settings
    max_queue_size: int = Field(default=1000, ge=1, description="Maximum queued entries")
    overflow_policy: str = Field(
        default="drop_oldest",
        description="Overflow policy: drop_oldest, drop_newest or drop_lowest_priority"
    )
    max_queue_age_hours: float = Field(
        default=72.0,
        ge=0,
        description="Maximum age of a queued entry in hours (0 disables)"
    )
    max_queue_attempts: int = Field(
        default=5,
        ge=1,
        description="Flush attempts a queued entry gets before it is dropped"
    )
    auto_persist: bool = Field(default=True, description="Persist after every queue mutation")
    storage_backend: str = Field(default="file", description="Queue storage: memory, file or s3")
    storage_path: str = Field(default=".eventrelay", description="Directory for the file backend")
    storage_key: str = Field(default="delivery-queue.json", description="Blob key of the persisted queue")
    s3_bucket: Optional[str] = Field(default=None, description="Bucket for the s3 backend")
    eviction_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval between periodic age evictions"
    )

    # Network settings
    reachability_url: Optional[str] = Field(
        default=None,
        description="URL pinged for latency checks (defaults to endpoint_url)"
    )
    ping_interval_seconds: float = Field(default=30.0, gt=0, description="Interval between latency checks")
    excellent_latency_ms: float = Field(default=100.0, gt=0, description="Latency at or below which the link is excellent")
    good_latency_ms: float = Field(default=300.0, gt=0, description="Latency at or below which the link is good")
    poor_latency_ms: float = Field(default=1000.0, gt=0, description="Latency at or above which the link is poor")
    compression_threshold_bytes: int = Field(
        default=10240,
        ge=0,
        description="Payload size above which compression is advised"
    )
    compress_payloads: bool = Field(default=True, description="Honor the compression advisory")
    defer_when_offline: bool = Field(default=True, description="Queue without attempting while offline")
    mobile_constrained: bool = Field(default=False, description="Defer non-critical work in low power mode")

    # Coordinator settings
    max_concurrency: int = Field(default=4, ge=1, le=32, description="Concurrent in-flight dispatches")
    flush_concurrency: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Concurrent dispatches within one priority tier during a flush"
    )
    auto_flush: bool = Field(default=True, description="Flush when connectivity is restored")
    signing_secret: Optional[str] = Field(default=None, description="Secret for payload signatures")
    signature_header: str = Field(default="X-Signature", description="Header carrying the signature")

    # Metrics settings
    metrics_enabled: bool = Field(default=False, description="Publish CloudWatch metrics")
    metrics_namespace: str = Field(default="EventRelay", description="CloudWatch metrics namespace")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator('endpoint_url', 'reachability_url')
    @classmethod
    def validate_urls(cls, v: Optional[str]) -> Optional[str]:
        """Validate optional URLs use HTTP or HTTPS."""
        if v is None:
            return v
        if not v.startswith(('http://', 'https://')):
            raise ValueError("URL must be a valid HTTP/HTTPS URL")
        return v

    @field_validator('overflow_policy')
    @classmethod
    def validate_overflow_policy(cls, v: str) -> str:
        """Validate overflow policy name."""
        valid_policies = ['drop_oldest', 'drop_newest', 'drop_lowest_priority']
        normalized = v.strip().lower()
        if normalized not in valid_policies:
            raise ValueError(f"overflow_policy must be one of: {', '.join(valid_policies)}")
        return normalized

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Validate storage backend name."""
        valid_backends = ['memory', 'file', 's3']
        normalized = v.strip().lower()
        if normalized not in valid_backends:
            raise ValueError(f"storage_backend must be one of: {', '.join(valid_backends)}")
        return normalized

    @field_validator('storage_key')
    @classmethod
    def validate_storage_key(cls, v: str) -> str:
        """Validate the blob key is a plain file-like name."""
        if not re.match(r'^[a-zA-Z0-9._-]+$', v):
            raise ValueError(
                "storage_key must contain only letters, numbers, dots, hyphens, and underscores"
            )
        return v

    @model_validator(mode='after')
    def validate_bounds(self) -> "DeliverySettings":
        """Cross-field checks on delays, latency thresholds and backends."""
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        if not self.excellent_latency_ms <= self.good_latency_ms <= self.poor_latency_ms:
            raise ValueError("latency thresholds must satisfy excellent <= good <= poor")
        if self.storage_backend == 's3' and not self.s3_bucket:
            raise ValueError("s3_bucket is required when storage_backend is 's3'")
        return self


# Default settings instance
settings = DeliverySettings()
