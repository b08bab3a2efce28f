"""
Shared fixtures: settings, a throwaway SQLite store and a fake weather provider.

The provider is an httpx.MockTransport; nothing here touches the network.
"""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

# Required setting; must exist before any Settings is built.
os.environ.setdefault("WEATHER_API_BASE_URL", "https://provider.test/v1/forecast")

from weather_bridge.app.core.config import get_settings, load_settings  # noqa: E402
from weather_bridge.app.core.database import (  # noqa: E402
    create_engine_from_url,
    create_session_factory,
    init_db,
)
from weather_bridge.app.store.models import WeatherLocation  # noqa: E402


PROVIDER_BASE_URL = "https://provider.test/v1/forecast"

# Nested far past the JSON decoder's recursion limit
DEEPLY_NESTED_BODY = '{"hourly":' + "[" * 100000 + "]" * 100000 + "}"

# Kraków, Warszawa
LOCATIONS: List[Tuple[int, str, str, float, float, str]] = [
    (1, "PL", "Krakow", 50.0647, 19.9450, "Y"),
    (2, "PL", "Warszawa", 52.2297, 21.0122, "Y"),
]


def provider_body(
    times: Sequence[str] = ("2025-01-01T00:00",),
    temps: Sequence[Any] = (5.0,),
    humidity: Sequence[Any] = (80,),
    precipitation: Sequence[Any] = (0.0,),
    wind: Sequence[Any] = (2.0,),
) -> Dict[str, Any]:
    return {
        "hourly": {
            "time": list(times),
            "temperature_2m": list(temps),
            "relativehumidity_2m": list(humidity),
            "precipitation": list(precipitation),
            "wind_speed_10m": list(wind),
        }
    }


class FakeProvider:
    """Records every request and answers with a canned response."""

    def __init__(self, status_code: int = 200, body: Any = None, error: Optional[Exception] = None):
        self.status_code = status_code
        self.body = provider_body() if body is None else body
        self.error = error
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        content = self.body if isinstance(self.body, (str, bytes)) else json.dumps(self.body)
        return httpx.Response(self.status_code, content=content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def calls(self) -> int:
        return len(self.requests)


class StoreHarness:
    """SQLite file store; open() must run inside the test's event loop."""

    def __init__(self, url: str):
        self.url = url

    async def open(self, locations: Sequence[Tuple] = LOCATIONS):
        engine = create_engine_from_url(self.url)
        await init_db(engine)
        factory = create_session_factory(engine)
        if locations:
            async with factory() as session:
                async with session.begin():
                    for loc_id, country, city, lat, lon, active in locations:
                        session.add(WeatherLocation(
                            id_location=loc_id,
                            country_code=country,
                            city_name=city,
                            latitude=lat,
                            longitude=lon,
                            active_flag=active,
                        ))
        return engine, factory


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return load_settings(
        WEATHER_API_BASE_URL=PROVIDER_BASE_URL,
        SCHEDULER_ENABLED=False,
        ENVIRONMENT="testing",
    )


@pytest.fixture
def store(tmp_path) -> StoreHarness:
    return StoreHarness(f"sqlite+aiosqlite:///{tmp_path / 'weather.db'}")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider
