"""
In-process scheduler loop — periodic synchronization pass for self-test.

═══════════════════════════════════════════════════════════════════════════
LOOP STATES
═══════════════════════════════════════════════════════════════════════════

    RUNNING ──(pass, then fixed wait)──▶ RUNNING
    RUNNING ──(context cancelled)─────▶ STOPPED   (terminal)

A pass runs to completion before the wait starts. Any error raised by a
pass is logged and swallowed; the loop only ends through its cancellation
context. Successes and failures wait the same fixed interval, no backoff.

The pass calls the weather proxy and the measurement store directly,
bypassing the HTTP endpoint, so it exercises the same logic the
orchestrator reaches through /weather/latest.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from weather_bridge.app.core.cancellation import (
    CancellationContext,
    OperationCancelledError,
)
from weather_bridge.app.core.config import Settings
from weather_bridge.app.core.database import get_session_factory
from weather_bridge.app.core.errors import CoordinateOutOfRangeError, PersistenceError
from weather_bridge.app.core.logging_config import log_context
from weather_bridge.app.ingestion.weather_service import (
    FetchStatus,
    WeatherProxy,
    validate_coordinates,
)
from weather_bridge.app.store.measurements import save_measurement
from weather_bridge.app.store.models import Measurement
from weather_bridge.app.store.registry import list_active_locations

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 600.0  # 10 minutes

PassFn = Callable[[CancellationContext], Awaitable[Any]]


class LoopState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class PassReport:
    """Outcome of one synchronization pass."""
    started_at: datetime
    locations: int = 0
    stored: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "locations": self.locations,
            "stored": list(self.stored),
            "failed": dict(self.failed),
        }


async def run_sync_pass(
    proxy: WeatherProxy,
    session_factory: async_sessionmaker[AsyncSession],
    ctx: CancellationContext,
) -> PassReport:
    """
    One pass: every active location → proxy → one committed row each.

    A location that fails is logged and skipped. StoreUnavailableError from
    the registry propagates; the loop logs it like any other pass failure.
    """
    report = PassReport(started_at=datetime.now(timezone.utc))
    locations = await list_active_locations(session_factory)
    report.locations = len(locations)
    logger.info("Sync pass start: %d active locations", len(locations))

    for loc in locations:
        ctx.raise_if_cancelled()
        log_extra = {"location_id": loc.id, "lat": loc.latitude, "lon": loc.longitude}

        try:
            validate_coordinates(loc.latitude, loc.longitude)
        except CoordinateOutOfRangeError as e:
            logger.warning("Skipping location %d (%s): %s", loc.id, loc.city_name, e.message,
                           extra=log_extra)
            report.failed[loc.id] = e.message
            continue

        result = await proxy.fetch_latest(loc.latitude, loc.longitude, ctx)
        if result.status is FetchStatus.CANCELLED:
            raise OperationCancelledError(ctx.reason or "cancelled during fetch")
        if not result.success:
            logger.warning(
                "Fetch failed for location %d (%s): %s",
                loc.id, loc.city_name, result.error_message,
                extra={**log_extra, "failure_kind": result.failure_kind},
            )
            report.failed[loc.id] = result.error_message
            continue

        record = result.record
        measurement = Measurement(
            location_id=loc.id,
            measured_at=record.measured_at,
            temp_c=record.temp_c,
            humidity_pct=record.humidity_pct,
            wind_speed_ms=record.wind_speed_ms,
            is_rain=record.is_rain,
            raw_payload=result.raw_payload,
        )
        try:
            await save_measurement(session_factory, measurement)
        except PersistenceError as e:
            logger.error("Insert failed for location %d: %s", loc.id, e.message, extra=log_extra)
            report.failed[loc.id] = e.message
            continue

        report.stored.append(loc.id)
        logger.info(
            "Stored measurement for location %d %s: %sC rain=%s",
            loc.id, loc.city_name, record.temp_c, record.is_rain,
            extra=log_extra,
        )

    logger.info(
        "Sync pass end: %d stored, %d failed",
        len(report.stored), len(report.failed),
    )
    return report


class SyncLoop:
    """
    Runs `pass_fn` forever with a fixed pause between passes.

    Usage:
        loop = SyncLoop.from_settings(settings)
        loop.start()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        pass_fn: PassFn,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        ctx: Optional[CancellationContext] = None,
    ):
        self._pass_fn = pass_fn
        self.interval_seconds = interval_seconds
        self.ctx = ctx or CancellationContext()
        self.state = LoopState.STOPPED
        self.passes_completed = 0
        self.passes_failed = 0
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        proxy: Optional[WeatherProxy] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> "SyncLoop":
        pass_fn = functools.partial(
            run_sync_pass,
            proxy or WeatherProxy.from_settings(settings),
            session_factory or get_session_factory(settings),
        )
        return cls(pass_fn, interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS)

    async def run(self) -> None:
        self.state = LoopState.RUNNING
        logger.info("Sync loop started (interval %.0fs)", self.interval_seconds)
        try:
            while not self.ctx.cancelled:
                pass_no = self.passes_completed + self.passes_failed + 1
                with log_context(pass_no=pass_no):
                    try:
                        await self._pass_fn(self.ctx)
                        self.passes_completed += 1
                    except OperationCancelledError:
                        break
                    except Exception:
                        self.passes_failed += 1
                        logger.exception("Sync pass %d failed", pass_no)

                logger.info("Next sync pass in %.0fs", self.interval_seconds)
                if await self.ctx.wait(self.interval_seconds):
                    break
        finally:
            self.state = LoopState.STOPPED
            logger.info(
                "Sync loop stopped after %d passes (%d failed)",
                self.passes_completed + self.passes_failed, self.passes_failed,
            )

    def start(self) -> asyncio.Task:
        """Schedule run() on the current event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.ctx.cancel("sync loop stopping")
        if self._task is not None:
            await self._task
