"""
Location registry — read-only access to monitored locations.

Locations are loaded fresh for every pass; nothing here is cached.
Ordering of the returned sequence is whatever the store yields.
"""

from __future__ import annotations

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from weather_bridge.app.core.errors import LocationNotFoundError, StoreUnavailableError
from weather_bridge.app.store.models import Location, WeatherLocation

logger = logging.getLogger(__name__)

ACTIVE = "Y"


async def list_active_locations(
    session_factory: async_sessionmaker[AsyncSession],
) -> List[Location]:
    """
    Return every location flagged active.

    Raises StoreUnavailableError when the store cannot be reached; the
    caller decides whether that aborts its pass.
    """
    stmt = select(WeatherLocation).where(WeatherLocation.active_flag == ACTIVE)
    try:
        async with session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            locations = [row.to_location() for row in rows]
    except (SQLAlchemyError, OSError) as exc:
        raise StoreUnavailableError(str(exc)) from exc

    logger.debug("Loaded %d active locations", len(locations))
    return locations


async def get_active_location(session: AsyncSession, location_id: int) -> Location:
    """Coordinates for one active location, or LocationNotFoundError."""
    stmt = select(WeatherLocation).where(
        WeatherLocation.id_location == location_id,
        WeatherLocation.active_flag == ACTIVE,
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise LocationNotFoundError(location_id)
    return row.to_location()
