"""API route handlers for probes, metrics, sync mode control and index reads."""

import logging
from datetime import UTC, datetime
from typing import Any

from aiokafka.errors import KafkaError
from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from discovery_sync.api.schemas import (
    CategoryListResponse,
    LivenessResponse,
    ReadinessResponse,
    SyncModeRequest,
    SyncModeResponse,
    SyncModeSwitchResponse,
)
from discovery_sync.errors import StoreUnavailableError, SyncError
from discovery_sync.indexing.consumer import RunnerStatus
from discovery_sync.services.sync import SyncModeError, SyncService

logger = logging.getLogger(__name__)

router = APIRouter()
sync_router = APIRouter()
categories_router = APIRouter()

# Runner states that mean the consumer can no longer make progress
UNHEALTHY_RUNNER_STATES = (RunnerStatus.ERROR, RunnerStatus.CLOSED)


@router.get("/health", response_model=LivenessResponse)
async def health_check() -> LivenessResponse:
    """Process liveness probe."""
    return LivenessResponse(
        status="UP", timestamp=datetime.now(UTC).isoformat(timespec="seconds")
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"model": ReadinessResponse}},
)
async def readiness_check(request: Request) -> JSONResponse:
    """Report Elasticsearch and consumer readiness.

    Returns 503 when any dependency is DOWN.
    """
    writer = getattr(request.app.state, "writer", None)
    sync_service = getattr(request.app.state, "sync_service", None)

    es_up = False
    if writer is not None:
        es_up = await writer.check_health()

    kafka_up = sync_service is not None and (
        sync_service.runner.status not in UNHEALTHY_RUNNER_STATES
    )
    if not es_up:
        logger.warning("Readiness check: Elasticsearch DOWN")
    if not kafka_up:
        logger.warning("Readiness check: consumer DOWN")

    body = ReadinessResponse(
        status="UP" if es_up and kafka_up else "DOWN",
        timestamp=datetime.now(UTC).isoformat(timespec="seconds"),
        elasticsearch="UP" if es_up else "DOWN",
        kafka="UP" if kafka_up else "DOWN",
    )
    code = status.HTTP_200_OK if body.status == "UP" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=body.model_dump(), status_code=code)


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    """Prometheus metrics endpoint."""
    collector = request.app.state.metrics
    return Response(content=collector.render(), media_type=collector.content_type())


def _sync_service(request: Request) -> SyncService:
    sync_service = getattr(request.app.state, "sync_service", None)
    if sync_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service not initialized",
        )
    return sync_service


@sync_router.get("/sync/mode", response_model=SyncModeResponse)
async def get_sync_mode(request: Request) -> SyncModeResponse:
    """Current sync mode and path status."""
    return SyncModeResponse(**_sync_service(request).status())


@sync_router.put(
    "/sync/mode",
    response_model=SyncModeSwitchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def set_sync_mode(request: Request, body: SyncModeRequest) -> SyncModeSwitchResponse:
    """Switch between the custom engine and the Kafka Connect path.

    Raises:
        HTTPException: 400 for an unknown or disabled mode, 503 if the new path fails to start.
    """
    sync_service = _sync_service(request)
    try:
        switched = await sync_service.switch_mode(body.mode)
    except SyncModeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except KafkaError as e:
        logger.error(f"Failed to start {body.mode} sync: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to start {body.mode} sync: {e}",
        ) from e

    message = f"Switched to {body.mode}" if switched else f"Already running {body.mode}"
    logger.info(message)
    return SyncModeSwitchResponse(mode=body.mode, status="accepted", message=message)


def _read_failure(e: SyncError) -> HTTPException:
    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if isinstance(e, StoreUnavailableError)
        else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    logger.error(f"Index read failed: {e}")
    return HTTPException(status_code=code, detail=str(e))


@categories_router.get("/categories", response_model=CategoryListResponse)
async def list_categories(
    request: Request, size: int = Query(default=10, ge=1, le=1000)
) -> CategoryListResponse:
    """List indexed categories through the alias."""
    sync_service = _sync_service(request)
    try:
        documents = await sync_service.list_documents(size=size)
    except SyncError as e:
        raise _read_failure(e) from e
    return CategoryListResponse(
        alias=sync_service.namer.alias_name(sync_service.entity),
        count=len(documents),
        categories=documents,
    )


@categories_router.get("/categories/{category_id}")
async def get_category(request: Request, category_id: str) -> dict[str, Any]:
    """Fetch one indexed category.

    Raises:
        HTTPException: 404 when the category is not indexed.
    """
    try:
        document = await _sync_service(request).get_document(category_id)
    except SyncError as e:
        raise _read_failure(e) from e
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Category {category_id} not found",
        )
    return document
