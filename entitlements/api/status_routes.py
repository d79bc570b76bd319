"""
Status API routes - Health checks for the ledger database and Google Play.

Public endpoint (no auth) for status page aggregation.
Rate limited to prevent abuse.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from entitlements.config import settings
from entitlements.db.session import get_db
from entitlements.models.domain import ConnectionPhase
from entitlements.services.entitlement_service import EntitlementService

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

GOOGLE_PLAY_DISCOVERY_URL = "https://androidpublisher.googleapis.com/$discovery/rest?version=v3"

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _latency_status(latency_ms: int, timestamp: str) -> ProviderStatus:
    status = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=status,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if status == StatusLevel.DEGRADED else None,
    )


async def check_postgresql() -> ProviderStatus:
    """Check ledger database connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return _latency_status(int((time.perf_counter() - start) * 1000), timestamp)
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))

    return ProviderStatus(
        status=StatusLevel.OUTAGE,
        latency_ms=None,
        last_check=timestamp,
        message="Connection failed",
    )


async def check_google_play() -> ProviderStatus:
    """Check Google Play Developer API reachability."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    # If not configured, report as operational (not used)
    if not settings.GOOGLE_PLAY_SERVICE_ACCOUNT:
        return ProviderStatus(
            status=StatusLevel.OPERATIONAL,
            latency_ms=0,
            last_check=timestamp,
            message="Not configured",
        )

    try:
        async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
            # Discovery document does not require auth
            response = await client.get(GOOGLE_PLAY_DISCOVERY_URL)
            latency_ms = int((time.perf_counter() - start) * 1000)

            if response.status_code == 200:
                return _latency_status(latency_ms, timestamp)

            return ProviderStatus(
                status=StatusLevel.DEGRADED,
                latency_ms=latency_ms,
                last_check=timestamp,
                message=f"Unexpected status: {response.status_code}",
            )
    except httpx.TimeoutException:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except httpx.HTTPError as e:
        logger.warning("google_play_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


def check_billing_connection(service: EntitlementService | None) -> ProviderStatus:
    """Report the provider connection phase held by the connection manager."""
    timestamp = datetime.now(UTC).isoformat()
    if service is None:
        return ProviderStatus(
            status=StatusLevel.OUTAGE, last_check=timestamp, message="Service not started"
        )

    state = service.connection.state.value
    if state.phase == ConnectionPhase.READY:
        level = StatusLevel.OPERATIONAL
    elif state.phase == ConnectionPhase.PERMANENTLY_FAILED:
        level = StatusLevel.OUTAGE
    else:
        level = StatusLevel.DEGRADED

    message = state.phase.value
    if state.phase == ConnectionPhase.CONNECTING:
        message = f"connecting (attempt {state.attempt})"
    return ProviderStatus(status=level, last_check=timestamp, message=message)


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from dependency statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status(request: Request) -> ServiceStatusResponse:
    """
    Get entitlement service status.

    Public endpoint (no auth) for status page aggregation.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    postgresql_status, google_play_status = await asyncio.gather(
        check_postgresql(), check_google_play()
    )
    service = getattr(request.app.state, "entitlement_service", None)

    providers = {
        "postgresql": postgresql_status,
        "google_play": google_play_status,
        "billing_connection": check_billing_connection(service),
    }

    response = ServiceStatusResponse(
        service=settings.service_name,
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response
