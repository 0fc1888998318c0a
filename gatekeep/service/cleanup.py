from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List

from gatekeep.logging import get_logger

logger = get_logger(__name__)

# floor so a misconfigured interval cannot spin the loop
MIN_INTERVAL_SECONDS = 60


def sweep_sessions(runtime) -> int:
    return runtime.sessions.cleanup_expired()


def sweep_csrf_tokens(runtime) -> int:
    return runtime.csrf.cleanup_expired()


def sweep_otps(runtime) -> int:
    count = runtime.store.delete_expired_otps(datetime.utcnow())
    if count:
        logger.info("otps_expired_swept", count=count)
    return count


async def run_periodic(name: str, sweep: Callable[[], int], interval_seconds: int) -> None:
    """Run ``sweep`` in a worker thread every ``interval_seconds`` until cancelled."""
    interval = max(interval_seconds, MIN_INTERVAL_SECONDS)
    try:
        while True:
            try:
                await asyncio.to_thread(sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("cleanup_sweep_failed", sweep=name, error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("cleanup_task_cancelled", sweep=name)
        raise


def start_cleanup_tasks(runtime) -> List[asyncio.Task]:
    settings = runtime.settings
    schedule = [
        ("sessions", lambda: sweep_sessions(runtime), settings.session_cleanup_interval_seconds),
        ("csrf_tokens", lambda: sweep_csrf_tokens(runtime), settings.csrf_cleanup_interval_seconds),
        ("otps", lambda: sweep_otps(runtime), settings.otp_cleanup_interval_seconds),
    ]
    return [
        asyncio.create_task(run_periodic(name, sweep, interval), name=f"cleanup:{name}")
        for name, sweep, interval in schedule
    ]
