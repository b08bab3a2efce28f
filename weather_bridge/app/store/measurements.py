"""
Measurement store — append-only insert path.

Every insert is its own unit of work: one row, one commit. Rows are never
updated or deleted here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from weather_bridge.app.core.errors import PersistenceError
from weather_bridge.app.store.models import Measurement, WeatherMeasurement

logger = logging.getLogger(__name__)


def rain_flag(is_rain: bool) -> str:
    return "Y" if is_rain else "N"


def to_store_timestamp(value: datetime) -> datetime:
    """Naive UTC, the form the measured_at column holds."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_row(measurement: Measurement) -> WeatherMeasurement:
    return WeatherMeasurement(
        id_location=measurement.location_id,
        measured_at=to_store_timestamp(measurement.measured_at),
        temp_c=measurement.temp_c,
        humidity=measurement.humidity_pct,
        wind_speed_ms=measurement.wind_speed_ms,
        is_rain=rain_flag(measurement.is_rain),
        raw_json=measurement.raw_payload,
    )


async def insert_measurement(session: AsyncSession, measurement: Measurement) -> int:
    """Stage one row in `session` and flush it; the caller commits."""
    row = to_row(measurement)
    session.add(row)
    await session.flush()
    return row.id_measurement


async def save_measurement(
    session_factory: async_sessionmaker[AsyncSession],
    measurement: Measurement,
) -> int:
    """Insert and commit one measurement in its own transaction."""
    try:
        async with session_factory() as session:
            async with session.begin():
                row_id = await insert_measurement(session, measurement)
    except (SQLAlchemyError, OSError) as exc:
        raise PersistenceError(measurement.location_id, str(exc)) from exc

    logger.debug(
        "Stored measurement %d for location %d",
        row_id, measurement.location_id,
        extra={"location_id": measurement.location_id},
    )
    return row_id


async def count_measurements(
    session_factory: async_sessionmaker[AsyncSession],
    location_id: Optional[int] = None,
) -> int:
    stmt = select(func.count()).select_from(WeatherMeasurement)
    if location_id is not None:
        stmt = stmt.where(WeatherMeasurement.id_location == location_id)
    async with session_factory() as session:
        return int((await session.execute(stmt)).scalar_one())
