"""FastAPI router for the Courier ops surface.

Internal routes are called by other services; the /webhooks routes are
called on behalf of an owner identified by the X-Owner-Id header.
Authentication happens upstream.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from courier.models import DeliveryStats, utc_now
from courier.service import CourierService

from .schemas import (
    DeliveryLogResponse,
    DeliveryLogsResponse,
    HealthResponse,
    InternalStatsResponse,
    LogCounts,
    TriggerRequest,
    TriggerResponse,
    WebhookCounts,
    WebhookTestRequest,
)

router = APIRouter()

# Service instance (set by app lifespan)
_service: CourierService | None = None


def set_service(service: CourierService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> CourierService:
    """Dependency to get the CourierService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[CourierService, Depends(get_service)]
OwnerDep = Annotated[str, Header(alias="X-Owner-Id", min_length=1)]


@router.post(
    "/internal/webhooks/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["internal"],
)
async def trigger_webhook(request: TriggerRequest, service: ServiceDep) -> TriggerResponse:
    """Fan an event out to the owner's subscribed endpoints.

    Returns as soon as the deliveries are queued.
    """
    log_ids = await service.trigger.trigger(
        request.event_type,
        request.owner_id,
        request.data,
        request.metadata,
    )
    return TriggerResponse(queued=len(log_ids), log_ids=log_ids)


@router.get("/internal/health", response_model=HealthResponse, tags=["internal"])
async def health_check() -> HealthResponse | JSONResponse:
    """Report queue connectivity and background task state.

    Responds 503 when the service is not initialized or the queue is down.
    """
    from courier import __version__

    if _service is None:
        body = HealthResponse(
            status="unhealthy",
            version=__version__,
            queue="unavailable",
            queue_backend="unknown",
            workers_running=False,
            scheduler_running=False,
            timestamp=utc_now(),
        )
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))

    health = await _service.health()
    body = HealthResponse(version=__version__, timestamp=utc_now(), **health)
    if body.status != "healthy":
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body


@router.get("/internal/stats", response_model=InternalStatsResponse, tags=["internal"])
async def internal_stats(service: ServiceDep) -> InternalStatsResponse:
    """Queue counts plus service-wide endpoint and delivery counts."""
    queue_stats = await service.queue_stats()
    endpoints = await service.registry.list_endpoints()
    by_status = await service.store.count_by_status()

    return InternalStatsResponse(
        queue=queue_stats,
        webhooks=WebhookCounts(
            total=len(endpoints),
            active=sum(1 for endpoint in endpoints if endpoint.is_active),
        ),
        logs=LogCounts(total=sum(by_status.values()), by_status=dict(by_status)),
    )


@router.get("/webhooks/stats", response_model=DeliveryStats, tags=["webhooks"])
async def webhook_stats(owner_id: OwnerDep, service: ServiceDep) -> DeliveryStats:
    """Endpoint and delivery counts for the calling owner."""
    return await service.delivery_stats(owner_id)


@router.get(
    "/webhooks/{endpoint_id}/logs",
    response_model=DeliveryLogsResponse,
    tags=["webhooks"],
)
async def webhook_logs(
    endpoint_id: str,
    owner_id: OwnerDep,
    service: ServiceDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DeliveryLogsResponse:
    """Page through an endpoint's delivery logs, newest first."""
    logs, total = await service.get_logs(owner_id, endpoint_id, limit=limit, offset=offset)
    return DeliveryLogsResponse(
        logs=[DeliveryLogResponse.from_log(log) for log in logs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/webhooks/{endpoint_id}/test",
    response_model=DeliveryLogResponse,
    tags=["webhooks"],
)
async def test_webhook(
    endpoint_id: str,
    request: WebhookTestRequest,
    owner_id: OwnerDep,
    service: ServiceDep,
) -> DeliveryLogResponse:
    """Send one test delivery synchronously and return its log."""
    log = await service.trigger.test(endpoint_id, owner_id, request.event_type, request.data)
    return DeliveryLogResponse.from_log(log)
