"""
Pydantic schemas for the local weather endpoint.

Field aliases are the wire contract consumed by the orchestrator; changing
them breaks every stored routine that parses /weather/latest.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from weather_bridge.app.ingestion.weather_service import NormalizedWeatherRecord


class WeatherLatestOut(BaseModel):
    """NormalizedWeatherRecord as served by GET /weather/latest."""

    model_config = ConfigDict(populate_by_name=True)

    measured_at: datetime = Field(..., alias="measuredAt")
    temp_c: Optional[float] = Field(None, alias="tempC")
    humidity: Optional[float] = Field(None, alias="humidity")
    wind_speed_ms: Optional[float] = Field(None, alias="windSpeedMs")
    is_rain: bool = Field(..., alias="isRain")

    @classmethod
    def from_record(cls, record: NormalizedWeatherRecord) -> "WeatherLatestOut":
        return cls(
            measured_at=record.measured_at,
            temp_c=record.temp_c,
            humidity=record.humidity_pct,
            wind_speed_ms=record.wind_speed_ms,
            is_rain=record.is_rain,
        )

    def to_record(self) -> NormalizedWeatherRecord:
        return NormalizedWeatherRecord(
            measured_at=self.measured_at,
            temp_c=self.temp_c,
            humidity_pct=self.humidity,
            wind_speed_ms=self.wind_speed_ms,
            is_rain=self.is_rain,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class LatestPayload(BaseModel):
    """
    Lenient read of a /weather/latest body on the consumer side.

    Selects the named fields from a single JSON object; `isRain` is kept
    raw because the consumer interprets it as text ("true"/"1"/other).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    measured_at: datetime = Field(..., alias="measuredAt")
    temp_c: Optional[float] = Field(None, alias="tempC")
    humidity: Optional[float] = Field(None, alias="humidity")
    wind_speed_ms: Optional[float] = Field(None, alias="windSpeedMs")
    is_rain: Any = Field(None, alias="isRain")


class ProblemOut(BaseModel):
    """Problem-detail error body."""
    title: str
    detail: str
    status: int
