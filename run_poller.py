#!/usr/bin/env python3
"""
Standalone Status Poller
========================
Drives a remote Scanwatch deployment's status sweep on an adaptive
schedule, for hosts where the API runs with POLLER_ENABLED=false.

Usage:
    python run_poller.py --url https://scanwatch.example.com --token $CRON_SECRET
"""

import argparse
import asyncio
import logging
import os

from scanwatch.config import CRON_SECRET, LOG_LEVEL, POLL_INTERVAL_MS, POLL_TIMEOUT_MS
from scanwatch.poller import AdaptivePoller, HttpSweepClient

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("scanwatch-poller")


async def run_poller(url: str, token: str, interval_ms: int, timeout_ms: int):
    client = HttpSweepClient(url, auth_token=token or None, internal=False, timeout_ms=timeout_ms)
    poller = AdaptivePoller(client, interval_ms=interval_ms, timeout_ms=timeout_ms)
    task = poller.start()
    try:
        await task
    finally:
        await poller.stop()


def main():
    parser = argparse.ArgumentParser(description="Poll a Scanwatch status sweep endpoint")
    parser.add_argument("--url", default=os.getenv("SCANWATCH_URL", "http://localhost:8000"))
    parser.add_argument("--token", default=CRON_SECRET, help="Bearer secret (defaults to CRON_SECRET)")
    parser.add_argument("--interval", type=int, default=POLL_INTERVAL_MS, help="Milliseconds between sweeps")
    parser.add_argument("--timeout", type=int, default=POLL_TIMEOUT_MS, help="Per-request deadline in milliseconds")
    args = parser.parse_args()

    logger.info(f"Polling {args.url} every {args.interval}ms")
    try:
        asyncio.run(run_poller(args.url, args.token, args.interval, args.timeout))
    except KeyboardInterrupt:
        logger.info("Poller stopped")


if __name__ == "__main__":
    main()
