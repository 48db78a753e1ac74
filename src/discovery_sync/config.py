"""Configuration management using Pydantic Settings."""

import json
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SyncMode = Literal["custom", "kafka-connect"]

# Change topics the decoder has a document schema for
SUPPORTED_ENTITIES = frozenset({"categories"})

# Parsed by the list validator instead of the JSON-only env decoding
StrList = Annotated[list[str], NoDecode]


def _parse_list(v: str | list[str]) -> list[str]:
    """Parse a list setting given as a JSON array or comma-separated string."""
    if isinstance(v, str):
        if v.startswith("["):
            parsed = json.loads(v)
            if not isinstance(parsed, list):
                raise ValueError("Expected a JSON list")
            return [str(item) for item in parsed]
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_environment: str = Field(
        default="development", description="Deployment environment (prod, stg, development)"
    )
    app_service_name: str = Field(default="digital-discovery-sync", description="Service name")
    app_version: str = Field(default="0.1.0", description="Service version")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="Render logs as JSON")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    sync_host: str = Field(default="0.0.0.0", description="HTTP server host")
    sync_port: int = Field(default=8082, description="HTTP server port")

    # Kafka
    kafka_bootstrap_servers: StrList = Field(
        default=["localhost:9092"], description="Kafka bootstrap servers"
    )
    kafka_group_id: str = Field(default="digital-discovery-sync", description="Consumer group ID")
    kafka_topic_prefix: str = Field(
        default="postgres.digital_discovery.public",
        description="Change-capture topic prefix; topics are '{prefix}.{entity}'",
    )
    kafka_entities: StrList = Field(
        default=["categories"],
        description="Entities whose change topics are consumed; only 'categories' is decoded",
    )
    kafka_auto_offset_reset: str = Field(default="earliest", description="Auto offset reset")
    kafka_security_enabled: bool = Field(default=False, description="Enable SASL/PLAIN")
    kafka_sasl_username: str = Field(default="", description="SASL username")
    kafka_sasl_password: str = Field(default="", description="SASL password")
    kafka_session_timeout_ms: int = Field(default=45000, description="Session timeout")
    kafka_max_poll_interval_ms: int = Field(default=300000, description="Max poll interval")
    kafka_fetch_timeout_ms: int = Field(default=1000, description="Fetch wait per poll")
    kafka_max_pending_per_partition: int = Field(
        default=500, description="Queued messages per partition before the partition is paused"
    )

    # Elasticsearch
    es_hosts: StrList = Field(
        default=["http://localhost:9200"], description="Elasticsearch hosts"
    )
    es_username: str = Field(default="", description="Elasticsearch username")
    es_password: str = Field(default="", description="Elasticsearch password")
    es_max_retries: int = Field(default=3, description="Transport-level retries")
    es_retry_on_timeout: bool = Field(default=True, description="Transport retry on timeout")
    es_request_timeout: float = Field(default=30.0, description="Per-request deadline (seconds)")
    es_max_connections: int = Field(default=10, description="Connections per node")
    es_gzip_enabled: bool = Field(default=True, description="Compress request bodies")
    es_shard_count: int = Field(default=3, description="Shards per index")
    es_replica_count: int = Field(default=1, description="Replicas per index")
    es_service_name: str = Field(
        default="digital-discovery", description="Service segment of index names"
    )
    es_lifecycle_policy: str = Field(
        default="digital-discovery-policy", description="Index lifecycle policy name"
    )

    # Sync
    sync_mode: SyncMode = Field(default="custom", description="Active sync path")
    sync_custom_enabled: bool = Field(default=True, description="Allow the custom sync engine")
    sync_connect_enabled: bool = Field(default=False, description="Allow the connector path")
    sync_connect_url: str = Field(
        default="http://localhost:8083", description="Kafka Connect REST URL"
    )
    sync_connect_name: str = Field(default="elasticsearch-sink", description="Sink connector")
    sync_connect_poll_interval_s: float = Field(default=30.0, description="Connector poll period")
    sync_batch_size: int = Field(default=100, ge=1, description="Bulk batch size")
    sync_bulk_enabled: bool = Field(default=False, description="Batch index writes")
    sync_bulk_flush_interval_ms: int = Field(
        default=0, ge=0, description="Timed bulk flush period, 0 disables"
    )
    sync_max_retries: int = Field(default=3, ge=1, description="Attempts per operation")
    sync_retry_delay_s: float = Field(default=5.0, gt=0, description="Base backoff delay")
    sync_max_retry_delay_s: float = Field(default=3600.0, gt=0, description="Backoff ceiling")
    sync_backoff_factor: float = Field(default=2.0, description="Backoff multiplier")
    sync_message_deadline_s: float | None = Field(
        default=None, description="Overall per-message processing deadline"
    )
    sync_failure_topic: str = Field(default="failed-syncs", description="Dead-letter topic")
    sync_dead_letter_enabled: bool = Field(
        default=False, description="Publish terminal failures to the dead-letter topic"
    )

    @field_validator("kafka_bootstrap_servers", "kafka_entities", "es_hosts", mode="before")
    @classmethod
    def parse_list(cls, v: str | list[str]) -> list[str]:
        """Accept comma-separated strings or JSON arrays."""
        return _parse_list(v)

    @field_validator("kafka_entities")
    @classmethod
    def validate_entities(cls, v: list[str]) -> list[str]:
        unsupported = sorted(set(v) - SUPPORTED_ENTITIES)
        if unsupported:
            raise ValueError(f"Unsupported entities: {', '.join(unsupported)}")
        if not v:
            raise ValueError("At least one entity is required")
        return v

    @field_validator("sync_backoff_factor")
    @classmethod
    def validate_backoff_factor(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"Backoff factor must be >= 1.0, got {v}")
        return v

    @property
    def topics(self) -> list[str]:
        """Change-capture topics consumed by the engine."""
        return [f"{self.kafka_topic_prefix}.{entity}" for entity in self.kafka_entities]

    @property
    def mode_enabled(self) -> bool:
        """Whether the configured sync mode is allowed to run."""
        return self.is_mode_enabled(self.sync_mode)

    def is_mode_enabled(self, mode: str) -> bool:
        if mode == "custom":
            return self.sync_custom_enabled
        if mode == "kafka-connect":
            return self.sync_connect_enabled
        return False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
