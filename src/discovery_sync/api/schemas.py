"""Pydantic schemas for API request and response models."""

from typing import Any

from pydantic import BaseModel, Field


class LivenessResponse(BaseModel):
    status: str = Field(description="Always UP while the process serves requests")
    timestamp: str = Field(description="Time of the check, RFC 3339")


class ReadinessResponse(BaseModel):
    """Readiness of the sync service and its dependencies."""

    status: str = Field(description="UP when every dependency is UP, otherwise DOWN")
    timestamp: str = Field(description="Time of the check, RFC 3339")
    elasticsearch: str = Field(description="Elasticsearch cluster health: UP or DOWN")
    kafka: str = Field(description="Consumer runner health: UP or DOWN")


class SyncModeResponse(BaseModel):
    """Current sync mode and the state of its path."""

    mode: str = Field(description="Active mode: custom, kafka-connect or none")
    enabled: bool = Field(description="Whether the active mode is enabled in configuration")
    status: str = Field(description="running, stopped or error")
    current_index: str = Field(description="Index receiving writes this month")
    consumer_status: str = Field(description="Consumer runner status")
    consumer_error: str | None = Field(
        default=None, description="Error that stopped the consumer runner"
    )
    assigned_partitions: int = Field(default=0, description="Partitions owned by this member")
    connector_state: str | None = Field(
        default=None, description="Last polled sink connector state"
    )
    connector_checked_at: str | None = Field(
        default=None, description="Time of the last connector poll, RFC 3339"
    )
    es_status: str = Field(description="Last known Elasticsearch health: UP or DOWN")


class SyncModeRequest(BaseModel):
    mode: str = Field(description="Mode to switch to: custom or kafka-connect")


class SyncModeSwitchResponse(BaseModel):
    mode: str = Field(description="Requested mode")
    status: str = Field(description="accepted")
    message: str = Field(description="What happened")


class CategoryListResponse(BaseModel):
    """Categories currently served through the alias."""

    alias: str = Field(description="Alias the documents were read from")
    count: int = Field(description="Number of documents returned")
    categories: list[dict[str, Any]] = Field(description="Indexed category documents")
