from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from goldbook.service import PriceRefresher
from goldbook.settings import Settings


async def refresh_job(*, refresher: PriceRefresher) -> None:
    await refresher.refresh()


def start_scheduler(*, settings: Settings, refresher: PriceRefresher) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        refresh_job,
        trigger="interval",
        seconds=settings.refresh_interval_seconds,
        kwargs={"refresher": refresher},
        id="price_refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    return scheduler
