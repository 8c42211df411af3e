#!/usr/bin/env python3
"""Auto-sync runner service.

This script runs as a periodic service that executes due backup jobs.
It can run in two modes:
1. API mode: Calls the service's run-due endpoint with the admin key
2. Direct mode: Runs the scheduler in-process against the database

Usage:
    python runner.py [--mode api|direct] [--interval SECONDS] [--once] [--drain]
"""

import argparse
import asyncio
import signal
import sys
import time
from typing import Any, List, Optional, Tuple

import httpx

from api.logging_config import configure_logging, get_logger
from api.settings import Settings, get_settings


logger = get_logger("runner")


async def run_due_via_api(api_url: str, api_key: str) -> dict:
    """Dispatch due jobs via the API.

    The service starts the jobs in the background, so a slow job never delays
    the next cycle.

    Args:
        api_url: Base URL of the auto-sync API.
        api_key: Admin API key.

    Returns:
        dict: The `data` part of the API response.
    """

    endpoint = f"{api_url.rstrip('/')}/auto-sync/runner/run-due"
    headers = {"X-Admin-Key": api_key}

    async with httpx.AsyncClient(timeout=None) as client:
        response = await client.post(endpoint, headers=headers, params={"wait": "false"})
        response.raise_for_status()
        return response.json().get("data") or {}


def extract_run_due_summary(result: Any) -> Tuple[int, List[str]]:
    """Extract the dispatched count and per-job errors from a run-due result.

    Args:
        result: `{"count": int, "results": [{"job_id", "status", ...}]}`.

    Returns:
        Tuple[int, List[str]]: (dispatched_count, errors)
    """

    if not isinstance(result, dict):
        return 0, [f"Unexpected run-due result type: {type(result).__name__}"]

    try:
        count = int(result.get("count") or 0)
    except (TypeError, ValueError):
        count = 0

    errors: List[str] = []
    for item in result.get("results") or []:
        if not isinstance(item, dict):
            continue
        job_id = item.get("job_id")
        if item.get("status") == "error":
            errors.append(f"job_id={job_id}: {item.get('error') or 'Unknown error'}")
            continue
        run = item.get("run") or {}
        if run.get("outcome") == "failure":
            errors.append(f"job_id={job_id}: backup failed")

    return count, errors


async def run_api_cycle(
    api_url: str,
    api_key: str,
    *,
    max_jobs: int,
    drain_mode: bool = False,
    drain_max_batches: int = 20,
) -> None:
    """Run one cycle against the API.

    Args:
        api_url: API URL.
        api_key: Admin API key.
        max_jobs: Batch size of the service; a full batch triggers another call in drain mode.
        drain_mode: Keep calling until a batch is not full (or the safety limit is reached).
        drain_max_batches: Safety limit for batches per cycle.
    """

    try:
        total = 0
        all_errors: List[str] = []
        batches = 0
        while True:
            batches += 1
            if batches > max(1, drain_max_batches):
                logger.warning(
                    "Drain mode reached max batches (%s). Stopping to avoid infinite backlog loop.",
                    drain_max_batches,
                )
                break

            count, errors = extract_run_due_summary(await run_due_via_api(api_url, api_key))
            total += count
            all_errors.extend(errors)

            if not drain_mode or count < max_jobs:
                break

        if total > 0:
            logger.info("Dispatched %s job(s) in %s batch(es)", total, batches)
        else:
            logger.debug("No jobs due")

        for err in all_errors:
            logger.error("Job error: %s", err)

    except Exception as e:
        logger.error("Runner cycle failed: %s", e)


async def wait_for_api_ready(api_url: str, timeout_seconds: int = 120) -> bool:
    """Wait until the API health endpoint is reachable."""

    deadline = time.time() + timeout_seconds
    health_url = f"{api_url.rstrip('/')}/health"

    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.time() < deadline:
            try:
                resp = await client.get(health_url)
                if resp.status_code == 200:
                    return True
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
    return False


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass


async def api_loop(args: argparse.Namespace, settings: Settings) -> None:
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)

    logger.info("Waiting for API to become ready...")
    if not await wait_for_api_ready(args.api_url):
        logger.warning("API did not become ready; continuing anyway")

    while not stop_event.is_set():
        await run_api_cycle(
            args.api_url,
            args.api_key,
            max_jobs=settings.SCHEDULER_MAX_JOBS,
            drain_mode=args.drain,
            drain_max_batches=args.drain_max_batches,
        )
        if args.once:
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=args.interval)
        except asyncio.TimeoutError:
            pass


async def direct_loop(args: argparse.Namespace, settings: Settings) -> None:
    """Run the scheduler in this process."""

    from api.config.lifecycle import build_autosync_services, prepare_database
    from backend.database import close_database

    handler = await prepare_database(settings)
    services = build_autosync_services(handler, settings)
    batches = args.drain_max_batches if args.drain else 1

    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    try:
        if args.once:
            summary = await services.scheduler.drain_due(max_batches=batches, cancel_event=stop_event, wait=True)
            count, errors = extract_run_due_summary(summary)
            logger.info("Dispatched %s job(s)", count)
            for err in errors:
                logger.error("Job error: %s", err)
        else:
            await services.scheduler.run_forever(args.interval, stop_event, drain_max_batches=batches)
    finally:
        await close_database()


def parse_args(settings: Settings, argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Auto-sync runner service")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.RUNNER_INTERVAL,
        help="Seconds between cycles (default: 60)",
    )
    parser.add_argument(
        "--mode",
        choices=["api", "direct"],
        default=settings.RUNNER_MODE,
        help="Execution mode (default: api)",
    )
    parser.add_argument("--api-url", default=settings.RUNNER_API_URL, help="Service URL for API mode")
    parser.add_argument("--api-key", default=settings.get_admin_api_key(), help="Admin API key for API mode")
    parser.add_argument(
        "--drain",
        action="store_true",
        default=settings.RUNNER_DRAIN_MODE,
        help="Run several batches per cycle to catch up on past-due jobs",
    )
    parser.add_argument(
        "--drain-max-batches",
        type=int,
        default=settings.RUNNER_DRAIN_MAX_BATCHES,
        help="Safety limit for drain batches per cycle (default: 20)",
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point."""

    settings = get_settings()
    configure_logging(
        log_dir=settings.LOG_DIR,
        log_level=settings.LOG_LEVEL,
        debug=settings.DEBUG,
        log_filename="autosync-runner.log",
    )
    args = parse_args(settings, argv)

    if args.mode == "api" and not args.api_key:
        logger.error("API key required for API mode. Set ADMIN_API_KEY or use --api-key")
        sys.exit(1)

    logger.info(
        "Runner started (mode=%s, interval=%ss, drain_mode=%s)",
        args.mode,
        args.interval,
        args.drain,
    )

    if args.mode == "api":
        asyncio.run(api_loop(args, settings))
    else:
        asyncio.run(direct_loop(args, settings))


if __name__ == "__main__":
    main()
