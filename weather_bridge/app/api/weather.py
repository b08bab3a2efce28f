"""
FastAPI routes: local weather endpoint consumed by the orchestrator.

    GET /health                         → 200 "OK", no dependency checks
    GET /weather/latest?lat=..&lon=..   → normalized latest sample

Failure mapping for /weather/latest:
    coordinate out of range / unparsable → 400
    caller gone before or during fetch  → 499
    provider failure of any kind        → 502 problem body
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response

from weather_bridge.app.api.schemas import ProblemOut, WeatherLatestOut
from weather_bridge.app.core.cancellation import CancellationContext
from weather_bridge.app.core.config import Settings, get_settings
from weather_bridge.app.core.errors import UpstreamUnavailableError
from weather_bridge.app.ingestion.weather_service import (
    FetchStatus,
    WeatherProxy,
    validate_coordinates,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["weather"])

CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_SECONDS = 0.1


def get_weather_proxy(settings: Settings = Depends(get_settings)) -> WeatherProxy:
    """Dependency: proxy built from the startup settings."""
    return WeatherProxy.from_settings(settings)


async def _cancel_on_disconnect(request: Request, ctx: CancellationContext) -> None:
    """Cancel `ctx` once the caller goes away; ends when `ctx` is cancelled."""
    while not await ctx.wait(DISCONNECT_POLL_SECONDS):
        if await request.is_disconnected():
            ctx.cancel("caller disconnected")
            return


@router.get("/health", response_class=PlainTextResponse, summary="Liveness probe")
async def health() -> str:
    return "OK"


@router.get(
    "/weather/latest",
    response_model=WeatherLatestOut,
    summary="Latest normalized weather sample",
    responses={
        400: {"model": ProblemOut, "description": "Coordinates out of range"},
        499: {"description": "Client closed request"},
        502: {"model": ProblemOut, "description": "Weather provider failure"},
    },
)
async def weather_latest(
    request: Request,
    lat: float = Query(..., description="Latitude, -90..90"),
    lon: float = Query(..., description="Longitude, -180..180"),
    proxy: WeatherProxy = Depends(get_weather_proxy),
):
    """
    **Flow:**
    1. Validate lat, then lon (400 before any network call)
    2. Bail out with 499 if the caller is already gone
    3. Delegate to the weather proxy, abandoning it if the caller leaves
    4. Map proxy failures to 502, success to the normalized record
    """
    validate_coordinates(lat, lon)

    if await request.is_disconnected():
        logger.info("Caller disconnected before dispatch", extra={"lat": lat, "lon": lon})
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    ctx = CancellationContext()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, ctx))
    try:
        result = await proxy.fetch_latest(lat, lon, ctx)
    finally:
        watcher.cancel()

    if result.status is FetchStatus.CANCELLED:
        logger.info("Caller disconnected during provider call", extra={"lat": lat, "lon": lon})
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if not result.success:
        logger.warning(
            "Weather fetch failed for (%s, %s): %s",
            lat, lon, result.error_message,
            extra={"lat": lat, "lon": lon, "failure_kind": result.failure_kind},
        )
        raise UpstreamUnavailableError(result.status.value, result.error_message)

    return WeatherLatestOut.from_record(result.record)
