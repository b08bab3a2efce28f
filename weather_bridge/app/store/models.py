"""
Database models for the weather synchronization store.

═══════════════════════════════════════════════════════════════════════════
DATABASE SCHEMA
═══════════════════════════════════════════════════════════════════════════

Table: weather_locations
─────────────────────────────────────────────────────────────────────────────
| Column        | Type          | Description                              |
|---------------|---------------|------------------------------------------|
| id_location   | INTEGER PK    | Location id (assigned by operators)      |
| country_code  | VARCHAR(2)    | ISO country code                         |
| city_name     | VARCHAR(100)  | Display name                             |
| latitude      | FLOAT         | -90 to 90                                |
| longitude     | FLOAT         | -180 to 180                              |
| active_flag   | CHAR(1)       | 'Y' = synchronized, 'N' = ignored        |
─────────────────────────────────────────────────────────────────────────────

Table: weather_measurements  (append-only)
─────────────────────────────────────────────────────────────────────────────
| id_measurement| INTEGER PK    | Surrogate key (no natural key on purpose)|
| id_location   | INTEGER FK    | → weather_locations.id_location          |
| measured_at   | TIMESTAMP     | Sample hour, naive UTC                   |
| temp_c        | FLOAT NULL    | °C                                       |
| humidity      | FLOAT NULL    | %                                        |
| wind_speed_ms | FLOAT NULL    | Wind speed                               |
| is_rain       | CHAR(1)       | 'Y' / 'N'                                |
| raw_json      | TEXT          | Body the row was built from              |
─────────────────────────────────────────────────────────────────────────────

Table: weather_endpoint_grants
─────────────────────────────────────────────────────────────────────────────
| host, principal, privilege (unique) + granted_at                         |
─────────────────────────────────────────────────────────────────────────────

Duplicate (id_location, measured_at) rows are allowed: running the same
synchronization twice against identical upstream data inserts twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from weather_bridge.app.core.database import Base


# ═══════════════════════════════════════════════════════════════════════════
# Domain records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """A monitored location, read fresh on every pass."""
    id: int
    country_code: str
    city_name: str
    latitude: float
    longitude: float


@dataclass
class Measurement:
    """One row to append to weather_measurements."""
    location_id: int
    measured_at: datetime
    temp_c: Optional[float]
    humidity_pct: Optional[float]
    wind_speed_ms: Optional[float]
    is_rain: bool
    raw_payload: str


# ═══════════════════════════════════════════════════════════════════════════
# ORM tables
# ═══════════════════════════════════════════════════════════════════════════

class WeatherLocation(Base):
    __tablename__ = "weather_locations"
    __table_args__ = (
        CheckConstraint("active_flag IN ('Y', 'N')", name="ck_locations_active_flag"),
    )

    id_location: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    country_code: Mapped[str] = mapped_column(String(2))
    city_name: Mapped[str] = mapped_column(String(100))
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    active_flag: Mapped[str] = mapped_column(String(1), default="Y")

    def to_location(self) -> Location:
        return Location(
            id=self.id_location,
            country_code=self.country_code,
            city_name=self.city_name,
            latitude=float(self.latitude),
            longitude=float(self.longitude),
        )


class WeatherMeasurement(Base):
    __tablename__ = "weather_measurements"
    __table_args__ = (
        CheckConstraint("is_rain IN ('Y', 'N')", name="ck_measurements_is_rain"),
    )

    id_measurement: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id_location: Mapped[int] = mapped_column(
        Integer, ForeignKey("weather_locations.id_location"), index=True
    )
    measured_at: Mapped[datetime] = mapped_column(DateTime)
    temp_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    humidity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    wind_speed_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_rain: Mapped[str] = mapped_column(String(1))
    raw_json: Mapped[str] = mapped_column(Text)


class EndpointGrant(Base):
    """Outbound-call permission for the orchestrator principal."""
    __tablename__ = "weather_endpoint_grants"
    __table_args__ = (
        UniqueConstraint("host", "principal", "privilege", name="uq_endpoint_grant"),
    )

    id_grant: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host: Mapped[str] = mapped_column(String(255))
    principal: Mapped[str] = mapped_column(String(128))
    privilege: Mapped[str] = mapped_column(String(16), default="http")
    granted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
