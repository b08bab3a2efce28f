"""
External orchestrator — batch worker that fills weather_measurements.

═══════════════════════════════════════════════════════════════════════════
TRIGGER → UNITS OF WORK
═══════════════════════════════════════════════════════════════════════════

Every ORCHESTRATOR_INTERVAL_SECONDS a trigger fires. One trigger:

    1. checks the principal holds an access grant for the endpoint host
    2. enumerates active locations, strictly one after another
    3. per location (one unit of work):
         read coordinates by id (active only)
         GET /weather/latest?lat=..&lon=..   (streamed into a growable buffer)
         pick measuredAt/tempC/humidity/windSpeedMs/isRain from the object
         isRain "true"/"1" (any case) → 'Y', anything else → 'N'
         INSERT one row, COMMIT
       a failing unit releases its buffer and raises LocationSyncError
       naming the location id; the trigger logs it and moves on

Rows committed for earlier locations are never rolled back by a later
failure. There is no atomicity across the batch and no retry: the next
trigger is the retry.

Triggers fire at a fixed rate. A trigger that is still running when the
next one fires is NOT waited for; both run and may insert duplicate work.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from weather_bridge.app.api.schemas import LatestPayload
from weather_bridge.app.core.cancellation import (
    CancellationContext,
    OperationCancelledError,
    ensure_context,
)
from weather_bridge.app.core.config import Settings
from weather_bridge.app.core.database import get_session_factory
from weather_bridge.app.core.errors import AccessNotProvisionedError, LocationSyncError
from weather_bridge.app.core.logging_config import log_context
from weather_bridge.app.ingestion.weather_service import format_coordinate
from weather_bridge.app.orchestrator.provisioning import has_endpoint_access
from weather_bridge.app.store.measurements import to_store_timestamp
from weather_bridge.app.store.models import WeatherMeasurement
from weather_bridge.app.store.registry import get_active_location, list_active_locations

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 32767
COORDINATE_DECIMALS = 6
RAIN_TRUE_VALUES = frozenset({"true", "1"})
REPORT_HISTORY = 50


def rain_indicator_to_flag(raw: Any) -> str:
    """'Y' for "true"/"1" in any case, 'N' for everything else (including null)."""
    if raw is None:
        return "N"
    return "Y" if str(raw).strip().lower() in RAIN_TRUE_VALUES else "N"


def endpoint_url_for(endpoint_url: str, latitude: float, longitude: float) -> str:
    lat = format_coordinate(round(latitude, COORDINATE_DECIMALS))
    lon = format_coordinate(round(longitude, COORDINATE_DECIMALS))
    separator = "&" if "?" in endpoint_url else "?"
    return f"{endpoint_url}{separator}lat={lat}&lon={lon}"


@dataclass
class TriggerReport:
    """What one trigger did, location by location."""
    trigger_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "cancelled": self.cancelled,
        }


class EndpointOrchestrator:
    """
    Calls the local endpoint per active location and appends measurements.

    Usage:
        orchestrator = EndpointOrchestrator.from_settings(settings)
        report = await orchestrator.run_trigger()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_url: str,
        *,
        principal: str = "weather_sync",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        chunk_size: int = READ_CHUNK_SIZE,
    ):
        self.session_factory = session_factory
        self.endpoint_url = endpoint_url
        self.endpoint_host = httpx.URL(endpoint_url).host
        self.principal = principal
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> "EndpointOrchestrator":
        return cls(
            session_factory or get_session_factory(settings),
            settings.ORCHESTRATOR_ENDPOINT_URL,
            principal=settings.ORCHESTRATOR_PRINCIPAL,
            timeout=settings.ORCHESTRATOR_TIMEOUT,
            transport=transport,
            chunk_size=chunk_size,
        )

    async def ensure_access(self) -> None:
        if not await has_endpoint_access(self.session_factory, self.endpoint_host, self.principal):
            raise AccessNotProvisionedError(self.endpoint_host, self.principal)

    async def _read_body(self, url: str, buffer: bytearray) -> int:
        """Stream the response into `buffer`; returns the number of chunks read."""
        chunks = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes(self.chunk_size):
                    buffer.extend(chunk)
                    chunks += 1
        return chunks

    async def sync_one_location(
        self,
        location_id: int,
        ctx: Optional[CancellationContext] = None,
    ) -> WeatherMeasurement:
        """
        One unit of work: fetch, parse, insert, commit.

        Raises LocationSyncError("sync_one_location (id=N): <cause>") on any
        failure; OperationCancelledError passes through untouched.
        """
        ctx = ensure_context(ctx)
        buffer = bytearray()
        try:
            async with self.session_factory() as session:
                location = await get_active_location(session, location_id)
                url = endpoint_url_for(self.endpoint_url, location.latitude, location.longitude)

                chunks = await ctx.guard(self._read_body(url, buffer))
                logger.debug(
                    "Read %d bytes in %d chunk(s)", len(buffer), chunks,
                    extra={"location_id": location_id},
                )

                body = buffer.decode("utf-8")
                payload = LatestPayload.model_validate_json(body)

                row = WeatherMeasurement(
                    id_location=location_id,
                    measured_at=to_store_timestamp(payload.measured_at),
                    temp_c=payload.temp_c,
                    humidity=payload.humidity,
                    wind_speed_ms=payload.wind_speed_ms,
                    is_rain=rain_indicator_to_flag(payload.is_rain),
                    raw_json=body,
                )
                session.add(row)
                await session.commit()
                return row
        except OperationCancelledError:
            raise
        except Exception as exc:
            raise LocationSyncError(location_id, exc) from exc
        finally:
            buffer.clear()

    async def run_trigger(self, ctx: Optional[CancellationContext] = None) -> TriggerReport:
        """
        Process every active location sequentially, each in its own unit of work.

        Registry failures (StoreUnavailableError) propagate to the schedule.
        """
        ctx = ensure_context(ctx)
        report = TriggerReport(
            trigger_id=uuid.uuid4().hex[:8],
            started_at=datetime.now(timezone.utc),
        )

        with log_context(trigger_id=report.trigger_id):
            access_error: Optional[AccessNotProvisionedError] = None
            try:
                await self.ensure_access()
            except AccessNotProvisionedError as e:
                access_error = e
                logger.error(e.message)

            locations = await list_active_locations(self.session_factory)
            logger.info("Trigger %s: %d active locations", report.trigger_id, len(locations))

            for loc in locations:
                if ctx.cancelled:
                    report.cancelled = True
                    break
                try:
                    if access_error is not None:
                        raise LocationSyncError(loc.id, access_error)
                    await self.sync_one_location(loc.id, ctx)
                    report.succeeded.append(loc.id)
                except LocationSyncError as e:
                    logger.error(e.message, extra={"location_id": loc.id})
                    report.failed[loc.id] = e.message
                except OperationCancelledError:
                    report.cancelled = True
                    break

            report.finished_at = datetime.now(timezone.utc)
            logger.info(
                "Trigger %s done: %d ok, %d failed%s",
                report.trigger_id, len(report.succeeded), len(report.failed),
                " (cancelled)" if report.cancelled else "",
            )
        return report


class OrchestratorSchedule:
    """
    Fixed-rate trigger source for an EndpointOrchestrator.

    Each tick launches run_trigger() as its own task and goes straight back
    to waiting; overlap with a slow previous trigger is logged, not blocked.
    A failed trigger never stops later ticks. Only the last `report_history`
    trigger reports are kept.
    """

    def __init__(
        self,
        orchestrator: EndpointOrchestrator,
        *,
        interval_seconds: float = 600.0,
        ctx: Optional[CancellationContext] = None,
        report_history: int = REPORT_HISTORY,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.ctx = ctx or CancellationContext()
        self.triggers_fired = 0
        self.reports: Deque[TriggerReport] = deque(maxlen=report_history)
        self._inflight: Set[asyncio.Task] = set()

    async def _fire(self) -> None:
        try:
            report = await self.orchestrator.run_trigger(self.ctx)
            self.reports.append(report)
        except Exception:
            logger.exception("Orchestrator trigger failed")

    async def run(self) -> None:
        logger.info("Orchestrator schedule started (every %.0fs)", self.interval_seconds)
        while not self.ctx.cancelled:
            if self._inflight:
                logger.warning(
                    "Trigger firing while %d previous trigger(s) still running",
                    len(self._inflight),
                )
            task = asyncio.create_task(self._fire())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            self.triggers_fired += 1

            if await self.ctx.wait(self.interval_seconds):
                break

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Orchestrator schedule stopped after %d triggers", self.triggers_fired)

    def stop(self) -> None:
        self.ctx.cancel("orchestrator schedule stopping")
