#!/usr/bin/env python3
"""Run an analytics job once, outside the scheduler.

Examples:
    python tooling/scripts/run_analytics_job.py hourly --hour 2026-01-05T14:00:00+00:00
    python tooling/scripts/run_analytics_job.py daily --date 2026-01-04
    python tooling/scripts/run_analytics_job.py cleanup
    python tooling/scripts/run_analytics_job.py engagement --days 30
    python tooling/scripts/run_analytics_job.py interest --hour 2026-01-05T14:00:00+00:00

Backfilling an hour or day that already has a rollup is a no-op.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import date, datetime
from typing import Any

from loguru import logger

from telemetry_api.core.clock import ensure_utc, floor_hour
from telemetry_api.db.session import async_session
from telemetry_api.jobs.engagement import run_engagement_scores, run_property_interest_rollup
from telemetry_api.services.analytics.aggregator import AnalyticsAggregator
from telemetry_api.services.engagement import PropertyInterestTracker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a telemetry analytics job once")
    subparsers = parser.add_subparsers(dest="job", required=True)

    hourly = subparsers.add_parser("hourly", help="Roll up one hour (default: the last completed hour).")
    hourly.add_argument("--hour", type=datetime.fromisoformat, default=None, help="ISO timestamp inside the hour.")

    daily = subparsers.add_parser("daily", help="Roll up one UTC day (default: yesterday).")
    daily.add_argument("--date", dest="day", type=date.fromisoformat, default=None, help="Day as YYYY-MM-DD.")

    subparsers.add_parser("cleanup", help="Delete one batch of raw telemetry past retention.")

    engagement = subparsers.add_parser("engagement", help="Recompute engagement scores for active clients.")
    engagement.add_argument("--days", type=int, default=None, help="Activity lookback window in days.")

    interest = subparsers.add_parser("interest", help="Fold one hour of client property interest (default: the last completed hour).")
    interest.add_argument("--hour", type=datetime.fromisoformat, default=None, help="ISO timestamp inside the hour.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    aggregator = AnalyticsAggregator(async_session)
    if args.job == "hourly":
        if args.hour is None:
            return await aggregator.run_hourly()
        return await aggregator.aggregate_hour(floor_hour(ensure_utc(args.hour)))
    if args.job == "daily":
        if args.day is None:
            return await aggregator.run_daily()
        return await aggregator.aggregate_day(args.day)
    if args.job == "cleanup":
        return (await aggregator.cleanup_retention()).as_dict()
    if args.job == "interest":
        if args.hour is None:
            return await run_property_interest_rollup(session_factory=async_session)
        async with async_session() as session:
            return await PropertyInterestTracker(session).aggregate_hour(ensure_utc(args.hour))
    return await run_engagement_scores(session_factory=async_session, days=args.days)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args))
    logger.bind(summary=summary).success("Analytics job completed", job=args.job)
    return 0


if __name__ == "__main__":
    sys.exit(main())
