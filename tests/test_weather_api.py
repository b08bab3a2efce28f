"""
test_weather_api.py — Tests for the local endpoint (/health, /weather/latest).

Covers:
    • Liveness route
    • 200 body shape and field names
    • Coordinate boundaries → 400 with no provider call
    • Provider failures → 502 problem body, never 500
    • Caller gone before or during the provider call → 499

Run with:
    pytest tests/test_weather_api.py -v
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import DEEPLY_NESTED_BODY, PROVIDER_BASE_URL, FakeProvider
from weather_bridge.app.api.schemas import WeatherLatestOut
from weather_bridge.app.api.weather import CLIENT_CLOSED_REQUEST, get_weather_proxy, weather_latest
from weather_bridge.app.core.errors import CoordinateOutOfRangeError
from weather_bridge.app.ingestion.weather_service import WeatherProxy
from weather_bridge.app.main import create_app


def _client(settings, provider: FakeProvider) -> TestClient:
    app = create_app(settings)
    proxy = WeatherProxy(PROVIDER_BASE_URL, transport=provider.transport)
    app.dependency_overrides[get_weather_proxy] = lambda: proxy
    return TestClient(app)


class _GoneRequest:
    """Stands in for a Starlette request whose client has disconnected."""

    async def is_disconnected(self) -> bool:
        return True


class _LeavingRequest:
    """Connected at dispatch, disconnected on every later check."""

    def __init__(self):
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.checks > 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: /health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_ok(self, settings, fake_provider):
        response = _client(settings, fake_provider).get("/health")
        assert response.status_code == 200
        assert response.text == "OK"

    def test_no_dependency_checks(self, settings, fake_provider):
        _client(settings, fake_provider).get("/health")
        assert fake_provider.calls == 0

    def test_request_id_header(self, settings, fake_provider):
        response = _client(settings, fake_provider).get("/health")
        assert response.headers.get("X-Request-ID")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: /weather/latest success
# ═══════════════════════════════════════════════════════════════════════════

class TestWeatherLatest:

    def test_normalized_record(self, settings, fake_provider):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": 50.0647, "lon": 19.945}
        )
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"measuredAt", "tempC", "humidity", "windSpeedMs", "isRain"}
        assert body["tempC"] == 5.0
        assert body["humidity"] == 80.0
        assert body["windSpeedMs"] == 2.0
        assert body["isRain"] is False
        assert body["measuredAt"].startswith("2025-01-01T00:00")

    def test_coordinates_forwarded(self, settings, fake_provider):
        _client(settings, fake_provider).get("/weather/latest", params={"lat": -12.5, "lon": 130.25})
        params = fake_provider.requests[0].url.params
        assert params["latitude"] == "-12.5"
        assert params["longitude"] == "130.25"

    def test_body_parses_back(self, settings, fake_provider):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": 0, "lon": 0}
        )
        record = WeatherLatestOut.model_validate(response.json()).to_record()
        assert record.temp_c == 5.0
        assert record.measured_at.year == 2025


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Coordinate validation
# ═══════════════════════════════════════════════════════════════════════════

class TestCoordinateBoundaries:

    @pytest.mark.parametrize("lat,lon", [(-90, 0), (90, 0), (0, 180), (0, -180)])
    def test_boundaries_accepted(self, settings, fake_provider, lat, lon):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": lat, "lon": lon}
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("lat,lon", [
        ("-90.0000001", "0"),
        ("90.0000001", "0"),
        ("0", "180.0000001"),
        ("0", "-180.0000001"),
    ])
    def test_out_of_range_rejected_without_network_call(self, settings, fake_provider, lat, lon):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": lat, "lon": lon}
        )
        assert response.status_code == 400
        assert response.json()["status"] == 400
        assert fake_provider.calls == 0

    def test_lat_message_names_parameter(self, settings, fake_provider):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": 123, "lon": 0}
        )
        assert "lat" in response.json()["detail"]

    def test_non_numeric_is_400(self, settings, fake_provider):
        response = _client(settings, fake_provider).get(
            "/weather/latest", params={"lat": "north", "lon": 0}
        )
        assert response.status_code == 400
        assert fake_provider.calls == 0

    def test_missing_parameter_is_400(self, settings, fake_provider):
        response = _client(settings, fake_provider).get("/weather/latest", params={"lat": 1})
        assert response.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Provider failures
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderFailures:

    @pytest.mark.parametrize("provider", [
        FakeProvider(body={"no": "hourly"}),
        FakeProvider(body=DEEPLY_NESTED_BODY),
        FakeProvider(status_code=500, body="internal"),
        FakeProvider(status_code=404, body="{}"),
        FakeProvider(error=httpx.ConnectError("Connection refused")),
        FakeProvider(error=httpx.ConnectTimeout("timed out")),
    ])
    def test_always_502(self, settings, provider):
        response = _client(settings, provider).get(
            "/weather/latest", params={"lat": 50, "lon": 20}
        )
        assert response.status_code == 502
        body = response.json()
        assert body["status"] == 502
        assert body["title"] == "Weather provider error"
        assert body["detail"]
        assert response.headers["content-type"].startswith("application/problem+json")


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Client closed request
# ═══════════════════════════════════════════════════════════════════════════

class TestClientClosedRequest:

    def test_disconnected_caller_gets_499(self, fake_provider):
        proxy = WeatherProxy(PROVIDER_BASE_URL, transport=fake_provider.transport)
        response = asyncio.run(weather_latest(_GoneRequest(), 10.0, 10.0, proxy))
        assert response.status_code == CLIENT_CLOSED_REQUEST == 499
        assert fake_provider.calls == 0

    def test_range_checked_before_disconnect(self, fake_provider):
        proxy = WeatherProxy(PROVIDER_BASE_URL, transport=fake_provider.transport)
        with pytest.raises(CoordinateOutOfRangeError):
            asyncio.run(weather_latest(_GoneRequest(), 95.0, 10.0, proxy))

    def test_caller_leaving_mid_fetch_abandons_provider_call(self, monkeypatch):
        monkeypatch.setattr("weather_bridge.app.api.weather.DISCONNECT_POLL_SECONDS", 0.01)
        started = []

        async def hanging(request: httpx.Request) -> httpx.Response:
            started.append(request)
            await asyncio.sleep(600)
            return httpx.Response(200)

        proxy = WeatherProxy(PROVIDER_BASE_URL, transport=httpx.MockTransport(hanging))
        request = _LeavingRequest()

        async def scenario():
            return await asyncio.wait_for(weather_latest(request, 10.0, 10.0, proxy), timeout=5)

        response = asyncio.run(scenario())
        assert response.status_code == CLIENT_CLOSED_REQUEST
        assert len(started) == 1
        assert request.checks >= 2

    def test_connected_caller_not_cancelled(self, fake_provider, monkeypatch):
        monkeypatch.setattr("weather_bridge.app.api.weather.DISCONNECT_POLL_SECONDS", 0.01)

        class _StayingRequest:
            async def is_disconnected(self) -> bool:
                return False

        proxy = WeatherProxy(PROVIDER_BASE_URL, transport=fake_provider.transport)
        body = asyncio.run(weather_latest(_StayingRequest(), 10.0, 10.0, proxy))
        assert isinstance(body, WeatherLatestOut)
        assert body.temp_c == 5.0
