"""
test_store.py — Tests for the location registry and measurement store.

Covers:
    • Active-flag filtering and single-location lookup
    • Append-only inserts (duplicates allowed, FK enforced)
    • Timestamp and rain-flag conversion
    • StoreUnavailableError when the store cannot be opened

Run with:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from weather_bridge.app.core.database import create_engine_from_url, create_session_factory
from weather_bridge.app.core.errors import (
    LocationNotFoundError,
    PersistenceError,
    StoreUnavailableError,
)
from weather_bridge.app.store.measurements import (
    count_measurements,
    rain_flag,
    save_measurement,
    to_store_timestamp,
)
from weather_bridge.app.store.models import Measurement, WeatherMeasurement
from weather_bridge.app.store.registry import get_active_location, list_active_locations


def _measurement(location_id: int = 1, is_rain: bool = False) -> Measurement:
    return Measurement(
        location_id=location_id,
        measured_at=datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc),
        temp_c=5.0,
        humidity_pct=80.0,
        wind_speed_ms=2.0,
        is_rain=is_rain,
        raw_payload='{"hourly": {}}',
    )


class TestConversions:

    def test_rain_flag(self):
        assert rain_flag(True) == "Y"
        assert rain_flag(False) == "N"

    def test_aware_timestamp_to_naive_utc(self):
        cet = timezone(timedelta(hours=1))
        value = datetime(2025, 1, 1, 1, 0, tzinfo=cet)
        assert to_store_timestamp(value) == datetime(2025, 1, 1, 0, 0)

    def test_naive_timestamp_unchanged(self):
        value = datetime(2025, 6, 1, 12, 0)
        assert to_store_timestamp(value) is value


class TestRegistry:

    def test_lists_only_active(self, store):
        locations = [
            (1, "PL", "Krakow", 50.0647, 19.9450, "Y"),
            (2, "PL", "Warszawa", 52.2297, 21.0122, "N"),
            (3, "PL", "Gdansk", 54.3520, 18.6466, "Y"),
        ]

        async def scenario():
            engine, factory = await store.open(locations)
            try:
                return await list_active_locations(factory)
            finally:
                await engine.dispose()

        result = asyncio.run(scenario())
        assert sorted(loc.id for loc in result) == [1, 3]
        krakow = next(loc for loc in result if loc.id == 1)
        assert krakow.latitude == pytest.approx(50.0647)
        assert krakow.city_name == "Krakow"

    def test_get_active_location(self, store):
        async def scenario():
            engine, factory = await store.open()
            try:
                async with factory() as session:
                    return await get_active_location(session, 2)
            finally:
                await engine.dispose()

        loc = asyncio.run(scenario())
        assert loc.city_name == "Warszawa"

    def test_inactive_location_not_found(self, store):
        async def scenario():
            engine, factory = await store.open([(7, "PL", "Lodz", 51.76, 19.46, "N")])
            try:
                async with factory() as session:
                    await get_active_location(session, 7)
            finally:
                await engine.dispose()

        with pytest.raises(LocationNotFoundError, match="id = 7"):
            asyncio.run(scenario())

    def test_unreachable_store(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'weather.db'}"

        async def scenario():
            engine = create_engine_from_url(url)
            try:
                await list_active_locations(create_session_factory(engine))
            finally:
                await engine.dispose()

        with pytest.raises(StoreUnavailableError):
            asyncio.run(scenario())


class TestMeasurements:

    def test_insert_row(self, store):
        async def scenario():
            engine, factory = await store.open()
            try:
                row_id = await save_measurement(factory, _measurement(is_rain=True))
                async with factory() as session:
                    row = await session.get(WeatherMeasurement, row_id)
                return row
            finally:
                await engine.dispose()

        row = asyncio.run(scenario())
        assert row.id_location == 1
        assert row.is_rain == "Y"
        assert row.measured_at == datetime(2025, 1, 1, 0, 0)
        assert row.raw_json == '{"hourly": {}}'

    def test_duplicates_allowed(self, store):
        async def scenario():
            engine, factory = await store.open()
            try:
                first = await save_measurement(factory, _measurement())
                second = await save_measurement(factory, _measurement())
                return first, second, await count_measurements(factory, 1)
            finally:
                await engine.dispose()

        first, second, count = asyncio.run(scenario())
        assert first != second
        assert count == 2

    def test_unknown_location_rejected(self, store):
        async def scenario():
            engine, factory = await store.open()
            try:
                await save_measurement(factory, _measurement(location_id=999))
            finally:
                await engine.dispose()

        with pytest.raises(PersistenceError) as exc:
            asyncio.run(scenario())
        assert exc.value.details["location_id"] == 999

    def test_nullable_readings(self, store):
        async def scenario():
            engine, factory = await store.open()
            try:
                m = _measurement()
                m.temp_c = None
                m.humidity_pct = None
                m.wind_speed_ms = None
                await save_measurement(factory, m)
                async with factory() as session:
                    return (await session.execute(select(WeatherMeasurement))).scalar_one()
            finally:
                await engine.dispose()

        row = asyncio.run(scenario())
        assert row.temp_c is None
        assert row.humidity is None
        assert row.wind_speed_ms is None
