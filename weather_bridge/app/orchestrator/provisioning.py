"""
Access provisioning and one-time setup for the orchestrator.

Before the orchestrator can call the local endpoint its principal needs an
outbound-call grant for the endpoint host. Grants live in
weather_endpoint_grants and are checked at the start of every trigger;
a missing grant fails each location's unit of work with a per-location
error rather than aborting the process.

Setup steps (each idempotent, safe to re-run):
    1. create schema
    2. seed reference locations (Kraków, Warszawa)
    3. grant the principal access to the endpoint host
    4. probe {scheme}://{host}:{port}/health
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from weather_bridge.app.core.config import Settings
from weather_bridge.app.core.database import init_db
from weather_bridge.app.store.models import EndpointGrant, WeatherLocation

logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT = 5.0
DEFAULT_PRIVILEGE = "http"

# id, country, city, lat, lon
REFERENCE_LOCATIONS = [
    (1, "PL", "Krakow", 50.0647, 19.9450),
    (2, "PL", "Warszawa", 52.2297, 21.0122),
]


async def has_endpoint_access(
    session_factory: async_sessionmaker[AsyncSession],
    host: str,
    principal: str,
    privilege: str = DEFAULT_PRIVILEGE,
) -> bool:
    stmt = select(EndpointGrant.id_grant).where(
        EndpointGrant.host == host,
        EndpointGrant.principal == principal,
        EndpointGrant.privilege == privilege,
    )
    async with session_factory() as session:
        return (await session.execute(stmt)).first() is not None


async def grant_endpoint_access(
    session_factory: async_sessionmaker[AsyncSession],
    host: str,
    principal: str,
    privilege: str = DEFAULT_PRIVILEGE,
) -> bool:
    """
    Grant `principal` outbound access to `host`.

    Returns True if a new grant was written, False if it already existed.
    """
    if await has_endpoint_access(session_factory, host, principal, privilege):
        logger.info("Grant already present: %s → %s (%s)", principal, host, privilege)
        return False

    try:
        async with session_factory() as session:
            async with session.begin():
                session.add(EndpointGrant(host=host, principal=principal, privilege=privilege))
    except IntegrityError:
        # concurrent grant won the unique constraint
        return False

    logger.info("Granted %s access for %s → %s", privilege, principal, host)
    return True


async def seed_reference_locations(
    session_factory: async_sessionmaker[AsyncSession],
) -> List[int]:
    """Insert the reference locations that are missing; returns the ids added."""
    added: List[int] = []
    async with session_factory() as session:
        async with session.begin():
            for loc_id, country, city, lat, lon in REFERENCE_LOCATIONS:
                if await session.get(WeatherLocation, loc_id) is not None:
                    continue
                session.add(WeatherLocation(
                    id_location=loc_id,
                    country_code=country,
                    city_name=city,
                    latitude=lat,
                    longitude=lon,
                    active_flag="Y",
                ))
                added.append(loc_id)

    if added:
        logger.info("Seeded reference locations: %s", added)
    return added


async def probe_endpoint_health(
    health_url: str,
    *,
    timeout: float = HEALTH_PROBE_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    GET the endpoint's /health and return the body.

    Raises httpx.HTTPError when the endpoint is unreachable or not 2xx.
    """
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.get(health_url)
        response.raise_for_status()
    body = response.text
    logger.info("Endpoint health %s → %d %s", health_url, response.status_code, body)
    return body


@dataclass
class ProvisionReport:
    host: str
    principal: str
    grant_created: bool = False
    seeded_locations: List[int] = field(default_factory=list)
    health: Optional[str] = None
    health_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "principal": self.principal,
            "grant_created": self.grant_created,
            "seeded_locations": list(self.seeded_locations),
            "health": self.health,
            "health_error": self.health_error,
        }


async def provision(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    engine: Optional[AsyncEngine] = None,
    seed: bool = True,
    probe: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProvisionReport:
    """Run every setup step for the configured endpoint and principal."""
    report = ProvisionReport(
        host=settings.orchestrator_endpoint_host,
        principal=settings.ORCHESTRATOR_PRINCIPAL,
    )

    await init_db(engine)
    if seed:
        report.seeded_locations = await seed_reference_locations(session_factory)
    report.grant_created = await grant_endpoint_access(
        session_factory, report.host, report.principal,
    )

    if probe:
        try:
            report.health = await probe_endpoint_health(
                settings.orchestrator_health_url, transport=transport,
            )
        except httpx.HTTPError as e:
            report.health_error = f"{type(e).__name__}: {e}"
            logger.warning("Endpoint health probe failed: %s", report.health_error)

    return report
