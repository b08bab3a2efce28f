"""Command line entry point: serve the endpoint, run the orchestrator, provision, self-test."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from weather_bridge.app.core.cancellation import CancellationContext
from weather_bridge.app.core.config import Settings, load_settings
from weather_bridge.app.core.database import close_db, get_engine, get_session_factory
from weather_bridge.app.core.errors import (
    AccessNotProvisionedError,
    ConfigMissingError,
    LocationSyncError,
    StoreUnavailableError,
)
from weather_bridge.app.core.health import run_connection_check
from weather_bridge.app.core.logging_config import setup_logging
from weather_bridge.app.ingestion.weather_service import WeatherProxy
from weather_bridge.app.orchestrator.batch import EndpointOrchestrator, OrchestratorSchedule
from weather_bridge.app.orchestrator.provisioning import provision
from weather_bridge.app.scheduler.sync_loop import run_sync_pass

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_STORE = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="weather-bridge",
        description="Weather sync bridge: local weather endpoint and measurement orchestrator.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the local endpoint (and scheduler loop if enabled).")
    serve.add_argument("--host", default=None, help="Override HOST.")
    serve.add_argument("--port", type=int, default=None, help="Override PORT.")

    orch = sub.add_parser("orchestrate", help="Run the orchestrator schedule.")
    orch.add_argument("--once", action="store_true", help="Fire a single trigger and exit.")
    orch.add_argument(
        "--location",
        type=int,
        default=None,
        help="Synchronize only this location id, once.",
    )

    sub.add_parser("sync-once", help="Run one scheduler pass directly against the provider.")

    prov = sub.add_parser("provision", help="Create schema, seed locations, grant endpoint access.")
    prov.add_argument("--no-seed", action="store_true", help="Skip reference locations.")
    prov.add_argument("--no-probe", action="store_true", help="Skip the /health probe.")

    check = sub.add_parser("check", help="Probe store and provider connectivity.")
    check.add_argument(
        "--endpoint",
        action="store_true",
        help="Also probe the local endpoint's /health.",
    )
    return parser


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _install_stop_handlers(ctx: CancellationContext) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, ctx.cancel, f"received {sig.name}")


# ── Commands ──

def cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    uvicorn.run(
        "weather_bridge.app.main:create_app",
        factory=True,
        host=args.host or settings.HOST,
        port=args.port or settings.PORT,
        log_config=None,
    )
    return EXIT_OK


async def cmd_orchestrate(settings: Settings, args: argparse.Namespace) -> int:
    orchestrator = EndpointOrchestrator.from_settings(settings)
    ctx = CancellationContext()
    _install_stop_handlers(ctx)

    try:
        if args.location is not None:
            try:
                await orchestrator.ensure_access()
            except AccessNotProvisionedError as e:
                raise LocationSyncError(args.location, e) from e
            row = await orchestrator.sync_one_location(args.location, ctx)
            _print_json({"location_id": args.location, "id_measurement": row.id_measurement})
            return EXIT_OK

        if args.once:
            report = await orchestrator.run_trigger(ctx)
            _print_json(report.to_dict())
            return EXIT_OK if not report.failed else EXIT_FAILED

        schedule = OrchestratorSchedule(
            orchestrator,
            interval_seconds=settings.ORCHESTRATOR_INTERVAL_SECONDS,
            ctx=ctx,
        )
        await schedule.run()
        return EXIT_OK
    except LocationSyncError as e:
        logger.error(e.message, extra={"location_id": e.location_id})
        return EXIT_FAILED
    finally:
        await close_db()


async def cmd_sync_once(settings: Settings, args: argparse.Namespace) -> int:
    ctx = CancellationContext()
    _install_stop_handlers(ctx)
    try:
        report = await run_sync_pass(
            WeatherProxy.from_settings(settings),
            get_session_factory(settings),
            ctx,
        )
    finally:
        await close_db()
    _print_json(report.to_dict())
    return EXIT_OK if not report.failed else EXIT_FAILED


async def cmd_provision(settings: Settings, args: argparse.Namespace) -> int:
    try:
        report = await provision(
            settings,
            get_session_factory(settings),
            engine=get_engine(settings),
            seed=not args.no_seed,
            probe=not args.no_probe,
        )
    finally:
        await close_db()
    _print_json(report.to_dict())
    return EXIT_OK


async def cmd_check(settings: Settings, args: argparse.Namespace) -> int:
    try:
        report = await run_connection_check(
            settings,
            get_engine(settings),
            WeatherProxy.from_settings(settings),
            include_endpoint=args.endpoint,
        )
    finally:
        await close_db()
    _print_json(report.to_dict())
    return EXIT_OK if report.ok else EXIT_FAILED


ASYNC_COMMANDS = {
    "orchestrate": cmd_orchestrate,
    "sync-once": cmd_sync_once,
    "provision": cmd_provision,
    "check": cmd_check,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigMissingError as exc:
        # logging is not configured yet; LOG_LEVEL may be the broken key
        print(f"Configuration failure: {exc.message}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(settings)

    if args.command == "serve":
        return cmd_serve(settings, args)

    try:
        return asyncio.run(ASYNC_COMMANDS[args.command](settings, args))
    except StoreUnavailableError as exc:
        logger.error("Store unavailable: %s", exc.message)
        return EXIT_STORE
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
