import asyncio
import logging
from datetime import timedelta

from chatstream.core.config import settings
from chatstream.core.logging import setup_logging
from chatstream.core.retention import SweepResult, sweep
from chatstream.infra.db import Base, SessionLocal, engine
from chatstream.infra.sse import BroadcastHub

logger = logging.getLogger("workers.loop")


async def heartbeat_loop(hub: BroadcastHub, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            results = hub.heartbeat()
            logger.debug("heartbeat sent", extra={"subscribers": len(results)})
        except Exception:
            logger.exception("heartbeat failed")


async def reap_loop(hub: BroadcastHub, interval: float, max_idle: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            hub.reap(max_idle)
        except Exception:
            logger.exception("reap failed")


def run_retention_sweep() -> SweepResult:
    retain_days = settings.RETENTION_MAX_AGE_DAYS
    db = SessionLocal()
    try:
        return sweep(
            db,
            purge_after=timedelta(days=settings.RETENTION_PURGE_DELETED_DAYS),
            retain_for=timedelta(days=retain_days) if retain_days else None,
        )
    finally:
        db.close()


async def retention_loop(interval: float) -> None:
    while True:
        try:
            await asyncio.to_thread(run_retention_sweep)
        except Exception:
            logger.exception("retention sweep failed")
        await asyncio.sleep(interval)


def start_background_tasks(hub: BroadcastHub) -> list:
    return [
        asyncio.create_task(
            heartbeat_loop(hub, settings.SSE_HEARTBEAT_SECONDS), name="sse-heartbeat"
        ),
        asyncio.create_task(
            reap_loop(
                hub, settings.SSE_REAP_INTERVAL_SECONDS, settings.SSE_MAX_IDLE_SECONDS
            ),
            name="sse-reap",
        ),
        asyncio.create_task(
            retention_loop(settings.RETENTION_INTERVAL_SECONDS), name="retention"
        ),
    ]


async def stop_background_tasks(tasks: list) -> None:
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def main():
    """One-off retention sweep, for cron or a container job."""
    setup_logging()
    Base.metadata.create_all(bind=engine)
    result = run_retention_sweep()
    logger.info(
        "sweep done purged=%d expired=%d", result.purged, result.expired
    )


if __name__ == "__main__":
    main()
