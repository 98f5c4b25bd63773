"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os
from datetime import timedelta

from celery import Celery

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")


def interval_minutes(name: str, default: int) -> timedelta:
    """Positive whole-minute interval from the environment."""
    minutes = int(os.environ.get(name, str(default)))
    if minutes <= 0:
        raise ValueError(f"{name} must be a positive number of minutes, got {minutes}")
    return timedelta(minutes=minutes)


SYNC_INTERVAL = interval_minutes("SYNC_INTERVAL_MINUTES", 30)
LATEST_REFRESH_INTERVAL = interval_minutes("LATEST_REFRESH_MINUTES", 10)

celery_app = Celery(
    "marketsync",
    broker=broker_url,
    backend=backend_url,
    include=["marketsync.jobs.sync", "marketsync.jobs.latest"],
)
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "sync-market-data": {
        "task": "marketsync.jobs.sync.run_sync",
        "schedule": SYNC_INTERVAL,
    },
    "refresh-market-latest": {
        "task": "marketsync.jobs.latest.run_refresh",
        "schedule": LATEST_REFRESH_INTERVAL,
    },
}


@celery_app.task(name="marketsync.jobs.sync.run_sync")
def run_sync_task():  # pragma: no cover - executed by worker
    import asyncio

    from marketsync.jobs.sync import run_sync

    outcomes = asyncio.run(run_sync())
    return {f"{outcome.provider}:{outcome.sku}": outcome.status for outcome in outcomes}


@celery_app.task(name="marketsync.jobs.latest.run_refresh")
def run_refresh_task():  # pragma: no cover - executed by worker
    from marketsync.jobs.latest import run_refresh

    return run_refresh()
