"""
Campaign Engine Main Application

FastAPI application for campaign automation and execution.
Port: 8240
"""

import base64
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from core.config import get_settings, setup_logging
from core.correlation import CorrelationIdMiddleware, get_correlation_id
from core.nats_client import Event

from .factory import CampaignEngineFactory
from .models import (
    CampaignAnalytics,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignResponse,
    CampaignStatus,
    CampaignSummary,
    CampaignUpdateRequest,
    DispatchJob,
    DomainEventAccepted,
    DomainEventRequest,
    HealthResponse,
    LivenessResponse,
    ReadinessResponse,
    TrackingKind,
    TriggerType,
    UnsubscribeResponse,
)
from .protocols import (
    CampaignNotFoundError,
    CampaignValidationError,
    InvalidCampaignStateError,
    VariantAllocationError,
)

setup_logging()
logger = logging.getLogger(__name__)

# Service configuration
settings = get_settings()
SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.service_port
SERVICE_VERSION = "1.0.0"

TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[CampaignEngineFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = CampaignEngineFactory(settings)
    await factory.initialize()
    factory.start_background_tasks()

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Engine",
    description="Campaign automation: triggers, throttled multi-channel dispatch, tracking and analytics",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)
app.add_middleware(CorrelationIdMiddleware)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(CampaignNotFoundError)
async def campaign_not_found_handler(request: Request, exc: CampaignNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(InvalidCampaignStateError)
async def invalid_state_handler(request: Request, exc: InvalidCampaignStateError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(CampaignValidationError)
async def validation_error_handler(request: Request, exc: CampaignValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(VariantAllocationError)
async def variant_allocation_handler(request: Request, exc: VariantAllocationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all: full detail goes to the log, the caller gets the correlation id"""
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path} "
        f"[correlation_id={correlation_id}]: {exc}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "correlation_id": correlation_id},
    )


# ====================
# Dependencies
# ====================


def get_factory() -> CampaignEngineFactory:
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_service(engine: CampaignEngineFactory = Depends(get_factory)):
    """Get campaign service from factory"""
    return engine.service


def get_tenant_context(request: Request) -> dict:
    """Extract tenant and user from request headers"""
    tenant_id = request.headers.get("X-Tenant-ID")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Tenant-ID header is required",
        )
    return {
        "tenant_id": tenant_id,
        "user_id": request.headers.get("X-User-ID", "system"),
    }


# ====================
# Health Endpoints
# ====================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        except Exception:
            dependencies["postgres"] = "unhealthy"

        dependencies["event_bus"] = "healthy" if factory.event_bus.is_connected else "unhealthy"
        dependencies["workers"] = "running" if factory.worker_pool.is_running else "stopped"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    details = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            checks["database"] = db_healthy
            details["database"] = "Connected" if db_healthy else "Connection failed"
        except Exception as e:
            checks["database"] = False
            details["database"] = str(e)
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    ready = all(checks.get(k, False) for k in ["database"])

    return ReadinessResponse(
        ready=ready,
        checks=checks,
        details=details,
    )


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


# ====================
# Campaign CRUD Endpoints
# ====================


@app.post(
    "/campaigns",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(
    request: CampaignCreateRequest,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Create a new campaign in draft status"""
    campaign = await service.create_campaign(
        request=request,
        tenant_id=tenant["tenant_id"],
        created_by=tenant["user_id"],
    )

    return CampaignResponse(
        campaign=campaign,
        message="Campaign created successfully",
    )


@app.get(
    "/campaigns",
    response_model=CampaignListResponse,
    tags=["Campaigns"],
)
async def list_campaigns(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status (comma-separated)"),
    trigger_type: Optional[TriggerType] = Query(None, description="Filter by trigger type"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """List campaigns with filters"""
    statuses = None
    if status_filter:
        try:
            statuses = [CampaignStatus(s.strip()) for s in status_filter.split(",") if s.strip()]
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status filter: {status_filter}",
            )

    campaigns, total = await service.list_campaigns(
        tenant_id=tenant["tenant_id"],
        status=statuses,
        trigger_type=trigger_type,
        limit=limit,
        offset=offset,
    )

    return CampaignListResponse(
        campaigns=campaigns,
        total=total,
        limit=limit,
        offset=offset,
        has_more=(offset + len(campaigns)) < total,
    )


@app.get(
    "/campaigns/summary",
    response_model=CampaignSummary,
    tags=["Analytics"],
)
async def get_campaign_summary(
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Totals and averages across the tenant's campaigns"""
    return await service.get_summary(tenant["tenant_id"])


@app.get(
    "/campaigns/{campaign_id}",
    response_model=CampaignResponse,
    tags=["Campaigns"],
)
async def get_campaign(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Get campaign by ID"""
    campaign = await service.get_campaign(campaign_id, tenant["tenant_id"])
    return CampaignResponse(campaign=campaign)


@app.put(
    "/campaigns/{campaign_id}",
    response_model=CampaignResponse,
    tags=["Campaigns"],
)
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Update campaign definition and/or status"""
    campaign = await service.update_campaign(
        campaign_id=campaign_id,
        request=request,
        tenant_id=tenant["tenant_id"],
        updated_by=tenant["user_id"],
    )
    return CampaignResponse(campaign=campaign, message="Campaign updated successfully")


@app.delete(
    "/campaigns/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Campaigns"],
)
async def delete_campaign(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Cancel (if running) and soft delete a campaign"""
    await service.delete_campaign(campaign_id, tenant["tenant_id"], tenant["user_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ====================
# Lifecycle Endpoints
# ====================


@app.post(
    "/campaigns/{campaign_id}/launch",
    response_model=CampaignResponse,
    tags=["Lifecycle"],
)
async def launch_campaign(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Launch a draft campaign"""
    campaign = await service.launch_campaign(campaign_id, tenant["tenant_id"], tenant["user_id"])
    return CampaignResponse(campaign=campaign, message="Campaign launched")


@app.post(
    "/campaigns/{campaign_id}/pause",
    response_model=CampaignResponse,
    tags=["Lifecycle"],
)
async def pause_campaign(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Pause an active campaign"""
    campaign = await service.pause_campaign(campaign_id, tenant["tenant_id"], tenant["user_id"])
    return CampaignResponse(campaign=campaign, message="Campaign paused")


@app.post(
    "/campaigns/{campaign_id}/resume",
    response_model=CampaignResponse,
    tags=["Lifecycle"],
)
async def resume_campaign(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Resume a paused campaign"""
    campaign = await service.resume_campaign(campaign_id, tenant["tenant_id"], tenant["user_id"])
    return CampaignResponse(campaign=campaign, message="Campaign resumed")


@app.get(
    "/campaigns/{campaign_id}/analytics",
    response_model=CampaignAnalytics,
    tags=["Analytics"],
)
async def get_campaign_analytics(
    campaign_id: str,
    service=Depends(get_service),
    tenant: dict = Depends(get_tenant_context),
):
    """Counters, derived rates and execution timeline"""
    return await service.get_analytics(campaign_id, tenant["tenant_id"])


# ====================
# Tracking Endpoints (public)
# ====================


async def _track(request: Request, campaign_id: str, recipient_id: str, kind: TrackingKind) -> None:
    if not factory:
        logger.warning(f"Tracking {kind.value} dropped: service not initialized")
        return
    client_key = request.client.host if request.client else None
    await factory.tracking.record_event(campaign_id, recipient_id, kind, client_key=client_key)


def _is_absolute_http_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@app.get("/campaigns/track/open/{campaign_id}/{recipient_id}", tags=["Tracking"])
async def track_open(campaign_id: str, recipient_id: str, request: Request):
    """Record an email open and return a 1x1 transparent pixel"""
    await _track(request, campaign_id, recipient_id, TrackingKind.OPEN)
    return Response(content=TRACKING_PIXEL, media_type="image/png", headers=NO_CACHE_HEADERS)


@app.get("/campaigns/track/click/{campaign_id}/{recipient_id}", tags=["Tracking"])
async def track_click(
    campaign_id: str,
    recipient_id: str,
    request: Request,
    url: Optional[str] = Query(None, description="Original link target"),
):
    """Record a click and redirect to the original link"""
    await _track(request, campaign_id, recipient_id, TrackingKind.CLICK)
    target = url if _is_absolute_http_url(url) else settings.default_redirect_url
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


@app.post(
    "/campaigns/track/unsubscribe/{campaign_id}/{recipient_id}",
    response_model=UnsubscribeResponse,
    tags=["Tracking"],
)
@app.get(
    "/campaigns/track/unsubscribe/{campaign_id}/{recipient_id}",
    response_model=UnsubscribeResponse,
    tags=["Tracking"],
)
async def track_unsubscribe(campaign_id: str, recipient_id: str, request: Request):
    """Record an unsubscribe"""
    await _track(request, campaign_id, recipient_id, TrackingKind.UNSUBSCRIBE)
    return UnsubscribeResponse()


# ====================
# Events & Dispatch Endpoints
# ====================


@app.post(
    "/events",
    response_model=DomainEventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Events"],
)
async def publish_domain_event(
    request: DomainEventRequest,
    engine: CampaignEngineFactory = Depends(get_factory),
    tenant: dict = Depends(get_tenant_context),
):
    """Accept a domain event from an external publisher"""
    event = Event(
        name=request.name,
        tenant_id=tenant["tenant_id"],
        payload=request.payload,
        source=tenant["user_id"],
    )
    if not await engine.event_bus.publish_event(event):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event bus unavailable",
        )
    return DomainEventAccepted(event_id=event.id, name=event.name)


@app.get(
    "/dispatch/failed",
    response_model=List[DispatchJob],
    tags=["Dispatch"],
)
async def list_failed_jobs(
    limit: int = Query(100, ge=1, le=500),
    engine: CampaignEngineFactory = Depends(get_factory),
    tenant: dict = Depends(get_tenant_context),
):
    """Dead-lettered jobs kept for manual inspection"""
    return await engine.task_queue.list_dead_letters(tenant["tenant_id"], limit)


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_engine.main:app",
        host="0.0.0.0",
        port=SERVICE_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
