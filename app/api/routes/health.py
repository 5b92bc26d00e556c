# app/api/routes/health.py
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.dependencies.ingestion import (
    get_backpressure_guard,
    get_ingestion_state,
    get_memory_sampler,
)
from app.core.config import get_settings
from app.services.attention_ingestion import IngestionStateTable
from app.services.backpressure import BackpressureGuard, MemorySampler

router = APIRouter(tags=["Health"])

_STARTED_AT = time.monotonic()


class MemoryUsage(BaseModel):
    rss_mb: float = Field(..., description="Resident set size in MB.", example=212.4)
    vms_mb: float = Field(..., description="Virtual memory size in MB.", example=1024.0)
    percent: float = Field(..., description="Share of system memory used by the process.", example=1.3)


class HealthResponse(BaseModel):
    """
    Response schema for the health check endpoint.
    """

    status: str = Field(
        ...,
        description="Overall health status of the Attention Monitor service.",
        example="ok",
    )
    app_name: str = Field(
        ...,
        description="Human-friendly name of the running application.",
        example="Attention Monitor",
    )
    environment: str = Field(
        ...,
        description="Current deployment environment (local/dev/stage/prod).",
        example="local",
    )
    timestamp_utc: datetime = Field(
        ...,
        description="Server-side timestamp (UTC) at which this health check was generated.",
        example="2025-01-01T10:30:00Z",
    )
    uptime_seconds: int = Field(..., description="Seconds since the process loaded the app.", example=3600)
    memory: MemoryUsage
    tracked_meetings: int = Field(
        ...,
        description="Meetings currently holding in-memory ingestion state.",
        example=2,
    )
    backpressure_limit_mb: float = Field(..., example=1800.0)
    backpressure_active: bool = Field(
        ...,
        description="True if ingestion calls are currently being dropped for memory pressure.",
        example=False,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check for the Attention Monitor service",
    description=(
        "Lightweight endpoint to verify that the backend is up and to expose "
        "process memory for the out-of-process monitor.\n\n"
        "Typical use-cases:\n"
        "- Container / VM health checks\n"
        "- `python -m app.monitor` memory polling\n"
        "- Quick smoke-test after deployments\n"
    ),
)
async def health_check(
    sampler: MemorySampler = Depends(get_memory_sampler),
    state_table: IngestionStateTable = Depends(get_ingestion_state),
    guard: BackpressureGuard = Depends(get_backpressure_guard),
) -> HealthResponse:
    """
    Returns the current health status of the service.

    Does not touch the database so that it stays reliable when storage
    is degraded.
    """
    settings = get_settings()
    memory = sampler.memory_report()
    limit = guard.limit_mb

    return HealthResponse(
        status="ok",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        timestamp_utc=datetime.now(tz=timezone.utc),
        uptime_seconds=int(time.monotonic() - _STARTED_AT),
        memory=MemoryUsage(**memory),
        tracked_meetings=len(state_table),
        backpressure_limit_mb=limit,
        backpressure_active=sampler.heap_used_mb() > limit,
    )
