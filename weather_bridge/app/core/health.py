"""
Connection self-test — one-shot probe of every outbound dependency.

Checks:
    • Measurement store (SELECT 1 over the configured engine)
    • Weather provider (one real request for the reference coordinate)
    • Local endpoint /health (only when asked; the endpoint may not be up)

Used by `weather-bridge check` before the scheduler or orchestrator is
started. Unlike GET /health, which answers "OK" without touching anything,
this touches everything and reports per component.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from weather_bridge.app.core.config import Settings
from weather_bridge.app.ingestion.weather_service import WeatherProxy
from weather_bridge.app.orchestrator.provisioning import probe_endpoint_health

logger = logging.getLogger(__name__)

# Kraków, the first seeded reference location
REFERENCE_LAT = 50.0647
REFERENCE_LON = 19.9450


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    SKIPPED = "skipped"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    version: str
    environment: str
    status: HealthStatus = HealthStatus.HEALTHY
    timestamp: str = ""
    components: List[ComponentHealth] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "components": [c.to_dict() for c in self.components],
        }


def _redact_url(url: str) -> str:
    return url.split("@")[-1]


async def check_database(engine: AsyncEngine, url: str = "") -> ComponentHealth:
    """Open a connection and run SELECT 1."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "SELECT 1 ok"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"{type(e).__name__}: {e}"
    if url:
        comp.details = {"url": _redact_url(url)}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_weather_provider(proxy: WeatherProxy) -> ComponentHealth:
    """Fetch the latest sample for the reference coordinate."""
    comp = ComponentHealth(name="weather_provider")
    result = await proxy.fetch_latest(REFERENCE_LAT, REFERENCE_LON)
    comp.latency_ms = float(result.fetch_duration_ms)
    comp.details = {"url": proxy.request_url(REFERENCE_LAT, REFERENCE_LON)}
    if result.success:
        comp.message = f"latest sample {result.record.measured_at.isoformat()}"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = result.error_message
        comp.details["failure_kind"] = result.failure_kind
    return comp


async def check_local_endpoint(
    health_url: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ComponentHealth:
    comp = ComponentHealth(name="local_endpoint", details={"url": health_url})
    start = time.monotonic()
    try:
        comp.message = await probe_endpoint_health(health_url, transport=transport)
    except httpx.HTTPError as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"{type(e).__name__}: {e}"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_connection_check(
    settings: Settings,
    engine: AsyncEngine,
    proxy: WeatherProxy,
    *,
    include_endpoint: bool = False,
    endpoint_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HealthReport:
    """Run every check and aggregate; never raises."""
    report = HealthReport(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    report.components.append(await check_database(engine, settings.DATABASE_URL))
    report.components.append(await check_weather_provider(proxy))
    if include_endpoint:
        report.components.append(
            await check_local_endpoint(settings.orchestrator_health_url, endpoint_transport)
        )
    else:
        report.components.append(
            ComponentHealth(name="local_endpoint", status=HealthStatus.SKIPPED)
        )

    if any(c.status is HealthStatus.UNHEALTHY for c in report.components):
        report.status = HealthStatus.UNHEALTHY

    for comp in report.components:
        log = logger.info if comp.status is not HealthStatus.UNHEALTHY else logger.error
        log("Connection check %s: %s %s", comp.name, comp.status.value, comp.message)
    return report
