# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Command-line interface for running and operating the SciFlow server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..core.engine import BountyLifecycleEngine
from ..core.exceptions import SciflowError
from ..core.inbound import DEFAULT_MAX_ATTEMPTS, InboundProcessor
from ..core.logging import configure_logging
from ..core.store import create_store
from ..core.watchdog import sweep
from ..rails import RailRegistry
from .auth import create_access_token
from .config import ServerSettings, get_settings

logger = logging.getLogger(__name__)


def _build_engine(settings: ServerSettings) -> BountyLifecycleEngine:
    store = create_store(settings.storage_backend)
    return BountyLifecycleEngine(store, RailRegistry.from_config(settings), config=settings)


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API under uvicorn."""
    from .app import run

    run()
    return 0


async def _process_events(engine: BountyLifecycleEngine, max_attempts: int, interval: float | None) -> dict[str, int]:
    processor = InboundProcessor(engine.store, engine, max_attempts=max_attempts)
    while True:
        counts = await processor.process_pending()
        if counts:
            logger.info(f"Processed rail events: {counts}")
        if interval is None:
            await engine.events.drain()
            return counts
        await asyncio.sleep(interval)


def cmd_process_events(args: argparse.Namespace) -> int:
    """Apply queued rail callbacks once, or keep polling with --interval."""
    engine = _build_engine(get_settings())
    try:
        counts = asyncio.run(_process_events(engine, args.max_attempts, args.interval))
    except KeyboardInterrupt:
        return 0
    print(json.dumps(counts, sort_keys=True))
    return 1 if counts.get("failed") else 0


async def _sweep(engine: BountyLifecycleEngine):
    report = sweep(engine.store, engine.events)
    await engine.events.drain()
    return report


def cmd_watchdog(args: argparse.Namespace) -> int:
    """Notify about overdue milestones and stale approvals."""
    engine = _build_engine(get_settings())
    report = asyncio.run(_sweep(engine))
    print(json.dumps(report.to_dict(), sort_keys=True))
    return 0


def cmd_issue_token(args: argparse.Namespace) -> int:
    """Issue a signed access token for a principal (operator use)."""
    try:
        token = create_access_token(args.principal, args.role or [], expires_in=args.expires_in)
    except ValueError as e:
        print(f"Invalid role: {e}", file=sys.stderr)
        return 1
    print(token)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="SciFlow settlement server",
        prog="sciflow",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the HTTP API")

    events_parser = subparsers.add_parser("process-events", help="Apply queued rail callbacks")
    events_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Keep running and poll every N seconds (default: drain once and exit)",
    )
    events_parser.add_argument(
        "--max-attempts",
        type=int,
        default=DEFAULT_MAX_ATTEMPTS,
        help=f"Attempts before an event is marked failed (default: {DEFAULT_MAX_ATTEMPTS})",
    )

    subparsers.add_parser("watchdog", help="Sweep for overdue milestones (run from cron)")

    token_parser = subparsers.add_parser("issue-token", help="Issue an API access token")
    token_parser.add_argument("--principal", "-p", required=True, help="Principal id (token subject)")
    token_parser.add_argument(
        "--role",
        "-r",
        action="append",
        choices=["funder", "lab", "admin", "arbitrator"],
        help="Capability to grant (repeatable)",
    )
    token_parser.add_argument(
        "--expires-in",
        type=int,
        default=None,
        help="Lifetime in seconds (default: SCIFLOW_JWT_EXPIRY_SECONDS)",
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(level=settings.log_level)

    try:
        if args.command == "serve":
            return cmd_serve(args)
        elif args.command == "process-events":
            return cmd_process_events(args)
        elif args.command == "watchdog":
            return cmd_watchdog(args)
        elif args.command == "issue-token":
            return cmd_issue_token(args)
    except SciflowError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
