"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Problem-detail JSON error bodies ({title, detail, status})
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from weather_bridge.app.core.errors import (
        WeatherBridgeError,
        CoordinateOutOfRangeError,
        UpstreamUnavailableError,
        register_error_handlers,
    )

    raise CoordinateOutOfRangeError("lat", 91.0, -90.0, 90.0)
"""

from __future__ import annotations

import logging
import traceback
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from weather_bridge.app.core.config import Settings

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class WeatherBridgeError(Exception):
    """Base exception for all application errors."""

    title = "Internal error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ConfigMissingError(WeatherBridgeError):
    """A required setting is absent or invalid."""

    title = "Configuration missing"

    def __init__(self, key: str):
        super().__init__(
            message=f"Missing or invalid configuration: {key}",
            error_code="CONFIG_MISSING",
            details={"key": key},
        )


class CoordinateOutOfRangeError(WeatherBridgeError):
    """Latitude/longitude outside the valid range (400)."""

    title = "Invalid coordinates"

    def __init__(self, field: str, value: float, low: float, high: float):
        super().__init__(
            message=f"Parameter '{field}' must be in [{low:g}, {high:g}], got {value}",
            status_code=400,
            error_code="COORDINATE_OUT_OF_RANGE",
            details={"field": field, "value": value},
        )


class UpstreamUnavailableError(WeatherBridgeError):
    """Weather provider fetch failed (502)."""

    title = "Weather provider error"

    def __init__(self, kind: str, message: str = ""):
        super().__init__(
            message=f"Weather provider request failed ({kind}): {message}",
            status_code=502,
            error_code="UPSTREAM_UNAVAILABLE",
            details={"failure_kind": kind},
        )


class StoreUnavailableError(WeatherBridgeError):
    """Connection to the measurement store could not be established."""

    title = "Store unavailable"

    def __init__(self, message: str = ""):
        super().__init__(
            message=f"Store unavailable: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
        )


class PersistenceError(WeatherBridgeError):
    """Insert or commit of a measurement row failed."""

    title = "Persistence error"

    def __init__(self, location_id: int, message: str = ""):
        super().__init__(
            message=f"Insert for location {location_id} failed: {message}",
            error_code="PERSISTENCE_ERROR",
            details={"location_id": location_id},
        )


class LocationNotFoundError(WeatherBridgeError):
    """No active location with the requested id."""

    title = "Location not found"

    def __init__(self, location_id: int):
        super().__init__(
            message=f"No active location with id = {location_id}",
            status_code=404,
            error_code="LOCATION_NOT_FOUND",
            details={"location_id": location_id},
        )


class AccessNotProvisionedError(WeatherBridgeError):
    """Orchestrator principal holds no grant for the endpoint host."""

    title = "Access not provisioned"

    def __init__(self, host: str, principal: str):
        super().__init__(
            message=f"Principal '{principal}' has no access grant for host '{host}'",
            status_code=403,
            error_code="ACCESS_NOT_PROVISIONED",
            details={"host": host, "principal": principal},
        )


class LocationSyncError(WeatherBridgeError):
    """One location's unit of work failed inside an orchestrator trigger."""

    title = "Location sync failed"

    def __init__(self, location_id: int, cause: BaseException):
        super().__init__(
            message=f"sync_one_location (id={location_id}): {cause}",
            error_code="LOCATION_SYNC_FAILED",
            details={"location_id": location_id, "cause": type(cause).__name__},
        )
        self.location_id = location_id
        self.cause = cause


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def build_problem_response(
    status_code: int,
    title: str,
    detail: str,
    *,
    extensions: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    include_request: bool = False,
) -> JSONResponse:
    """Build a problem-detail JSON response."""
    body: Dict[str, Any] = {
        "title": title,
        "detail": detail,
        "status": status_code,
    }

    if extensions:
        body.update(extensions)

    # Include request path in non-production
    if request is not None and include_request:
        body["instance"] = str(request.url.path)
        body["method"] = request.method

    return JSONResponse(
        status_code=status_code,
        content=body,
        media_type=PROBLEM_MEDIA_TYPE,
    )


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI, settings: "Settings") -> None:
    """Register all exception handlers on the FastAPI app."""
    include_request = not settings.is_production

    @app.exception_handler(WeatherBridgeError)
    async def handle_bridge_error(request: Request, exc: WeatherBridgeError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return build_problem_response(
            exc.status_code, exc.title, exc.message,
            extensions={"code": exc.error_code},
            request=request, include_request=include_request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'query')}: {err['msg']}"
            for err in exc.errors()
        )
        logger.warning("Rejected request parameters: %s", problems)
        return build_problem_response(
            400, "Invalid request parameters", problems,
            request=request, include_request=include_request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        detail = str(exc) if settings.DEBUG else "Internal server error"
        return build_problem_response(
            500, "Internal error", detail,
            request=request, include_request=include_request,
        )
