"""
weather_service.py — weather proxy in front of the hourly forecast provider.

Fetches the hourly time series for a coordinate and reduces it to the most
recent sample, the NormalizedWeatherRecord exposed by /weather/latest.

Provider response structure (Open-Meteo style):
    {
        "hourly": {
            "time": ["2025-01-01T00:00", ...],
            "temperature_2m": [5.0, ...],
            "relativehumidity_2m": [80, ...],
            "precipitation": [0.0, ...],
            "wind_speed_10m": [2.0, ...]
        }
    }

The arrays are parallel. The LAST index of each array is taken as the
freshest hour; the provider is trusted to return the series in
chronological order and timestamps are not checked for monotonicity.

Error Handling Strategy
========================
    fetch_latest() never raises. Every outcome is a FetchResult:
        SUCCESS                → record populated
        NETWORK_FAILURE        → timeout, DNS, refused connection
        UPSTREAM_STATUS_ERROR  → provider answered non-2xx
        PARSE_ERROR            → body is not the expected shape
        CANCELLED              → caller's context fired mid-call
    One GET per call, fixed timeout, no retry and no cache. Callers log the
    cause and decide what a failure means for them.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from weather_bridge.app.core.cancellation import (
    CancellationContext,
    OperationCancelledError,
    ensure_context,
)
from weather_bridge.app.core.config import Settings
from weather_bridge.app.core.errors import CoordinateOutOfRangeError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUEST_TIMEOUT = 10.0  # seconds

HOURLY_KEY = "hourly"

# Accepted spellings per series; the provider has used both forms.
TIME_KEYS = ("time",)
TEMPERATURE_KEYS = ("temperature_2m",)
HUMIDITY_KEYS = ("relativehumidity_2m", "relative_humidity_2m")
PRECIPITATION_KEYS = ("precipitation",)
WIND_SPEED_KEYS = ("wind_speed_10m", "windspeed_10m")

LAT_RANGE = (-90.0, 90.0)
LON_RANGE = (-180.0, 180.0)


class FetchStatus(str, Enum):
    """Outcome of a weather fetch."""
    SUCCESS = "success"
    NETWORK_FAILURE = "network_failure"
    UPSTREAM_STATUS_ERROR = "upstream_status_error"
    PARSE_ERROR = "parse_error"
    CANCELLED = "cancelled"


class WeatherParseError(ValueError):
    """Provider body does not have the expected time-series shape."""


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NormalizedWeatherRecord:
    """Most recent hourly sample, independent of the provider's raw schema."""
    measured_at: datetime
    temp_c: Optional[float]
    humidity_pct: Optional[float]
    wind_speed_ms: Optional[float]
    is_rain: bool


@dataclass
class FetchResult:
    """
    Result of a single proxy call.

    Callers check `success` (or branch on `status`) before touching `record`.
    `raw_payload` holds the provider body whenever one was received.
    """
    success: bool
    status: FetchStatus
    latitude: float
    longitude: float
    record: Optional[NormalizedWeatherRecord] = None
    raw_payload: str = ""
    upstream_status_code: Optional[int] = None
    error_message: str = ""
    fetch_duration_ms: int = 0

    @property
    def failure_kind(self) -> Optional[str]:
        return None if self.success else self.status.value


# ---------------------------------------------------------------------------
# Coordinate helpers
# ---------------------------------------------------------------------------

def validate_coordinates(latitude: float, longitude: float) -> None:
    """Raise CoordinateOutOfRangeError unless lat ∈ [-90,90] and lon ∈ [-180,180]."""
    if not (LAT_RANGE[0] <= latitude <= LAT_RANGE[1]):
        raise CoordinateOutOfRangeError("lat", latitude, *LAT_RANGE)
    if not (LON_RANGE[0] <= longitude <= LON_RANGE[1]):
        raise CoordinateOutOfRangeError("lon", longitude, *LON_RANGE)


def format_coordinate(value: float) -> str:
    """
    Plain positional decimal with '.' separator, never exponent notation
    and never locale dependent: 1e-05 → "0.00001", 50.0647 → "50.0647".
    """
    text = format(Decimal(repr(float(value))), "f")
    return "0" if text in ("-0", "-0.0") else text


def build_request_url(
    base_url: str,
    latitude: float,
    longitude: float,
    extra_params: Optional[str] = None,
) -> str:
    """Base URL + latitude/longitude + optional extra query string, verbatim."""
    separator = "&" if "?" in base_url else "?"
    url = (
        f"{base_url}{separator}latitude={format_coordinate(latitude)}"
        f"&longitude={format_coordinate(longitude)}"
    )
    if extra_params:
        url += "&" + extra_params.lstrip("?&")
    return url


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _series(hourly: Dict[str, Any], keys: Sequence[str]) -> List[Any]:
    for key in keys:
        if key in hourly:
            values = hourly[key]
            if not isinstance(values, list):
                raise WeatherParseError(f"'{key}' is not an array")
            if not values:
                raise WeatherParseError(f"'{key}' is empty")
            return values
    raise WeatherParseError(f"missing series '{keys[0]}'")


def _number(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise WeatherParseError(f"'{name}' is not numeric: {value!r}")
    return float(value)


def _timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise WeatherParseError(f"invalid timestamp: {value!r}")
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError as e:
        raise WeatherParseError(f"invalid timestamp: {value!r}") from e
    # Provider timestamps are UTC without an offset
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_latest(payload: Any) -> NormalizedWeatherRecord:
    """
    Reduce a provider body (already JSON-decoded) to its last hourly sample.

    Raises WeatherParseError if `hourly` is absent, any series is missing
    or empty, or a value has the wrong type.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get(HOURLY_KEY), dict):
        raise WeatherParseError(f"missing '{HOURLY_KEY}' object")
    hourly = payload[HOURLY_KEY]

    times = _series(hourly, TIME_KEYS)
    temps = _series(hourly, TEMPERATURE_KEYS)
    humidity = _series(hourly, HUMIDITY_KEYS)
    precip = _series(hourly, PRECIPITATION_KEYS)
    wind = _series(hourly, WIND_SPEED_KEYS)

    precipitation = _number(precip[-1], "precipitation")

    return NormalizedWeatherRecord(
        measured_at=_timestamp(times[-1]),
        temp_c=_number(temps[-1], "temperature_2m"),
        humidity_pct=_number(humidity[-1], "relativehumidity_2m"),
        wind_speed_ms=_number(wind[-1], "wind_speed_10m"),
        is_rain=precipitation is not None and precipitation > 0.0,
    )


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------

class WeatherProxy:
    """
    Thin async client for the provider.

    A fresh AsyncClient (one connection) is opened per call; nothing is
    pooled or shared between calls.

    Usage:
        proxy = WeatherProxy.from_settings(settings)
        result = await proxy.fetch_latest(50.0647, 19.9450)
        if result.success:
            print(result.record.temp_c)
    """

    def __init__(
        self,
        base_url: str,
        *,
        extra_params: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.extra_params = extra_params
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "WeatherProxy":
        return cls(
            settings.WEATHER_API_BASE_URL,
            extra_params=settings.WEATHER_API_PARAMS,
            timeout=settings.WEATHER_FETCH_TIMEOUT,
            transport=transport,
        )

    def request_url(self, latitude: float, longitude: float) -> str:
        return build_request_url(self.base_url, latitude, longitude, self.extra_params)

    async def fetch_latest(
        self,
        latitude: float,
        longitude: float,
        ctx: Optional[CancellationContext] = None,
    ) -> FetchResult:
        """
        Fetch and normalize the freshest sample for a coordinate.

        Coordinates are expected to be range-checked by the caller.
        """
        ctx = ensure_context(ctx)
        start_time = time.monotonic()
        url = self.request_url(latitude, longitude)
        logger.debug("Fetching weather: %s", url, extra={"lat": latitude, "lon": longitude})

        def failed(status: FetchStatus, message: str, **kwargs: Any) -> FetchResult:
            return FetchResult(
                success=False,
                status=status,
                latitude=latitude,
                longitude=longitude,
                error_message=message,
                fetch_duration_ms=int((time.monotonic() - start_time) * 1000),
                **kwargs,
            )

        # --- Single GET, no retry ---
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await ctx.guard(
                    client.get(url, headers={"Accept": "application/json"})
                )
        except OperationCancelledError:
            return failed(FetchStatus.CANCELLED, "request cancelled by caller")
        except httpx.TimeoutException as e:
            return failed(FetchStatus.NETWORK_FAILURE, f"timeout after {self.timeout:g}s: {e}")
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            return failed(FetchStatus.NETWORK_FAILURE, f"{type(e).__name__}: {e}")

        body = response.text

        if not response.is_success:
            return failed(
                FetchStatus.UPSTREAM_STATUS_ERROR,
                f"provider returned {response.status_code} {response.reason_phrase}",
                raw_payload=body,
                upstream_status_code=response.status_code,
            )

        # --- Parse response ---
        try:
            record = parse_latest(json.loads(body))
        except (ValueError, TypeError, RecursionError) as e:
            # json.JSONDecodeError and WeatherParseError are both ValueErrors;
            # RecursionError comes from pathologically nested bodies
            return failed(
                FetchStatus.PARSE_ERROR,
                f"Parse error: {e}",
                raw_payload=body,
                upstream_status_code=response.status_code,
            )

        return FetchResult(
            success=True,
            status=FetchStatus.SUCCESS,
            latitude=latitude,
            longitude=longitude,
            record=record,
            raw_payload=body,
            upstream_status_code=response.status_code,
            fetch_duration_ms=int((time.monotonic() - start_time) * 1000),
        )
