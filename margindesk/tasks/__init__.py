"""Celery app and task registration."""

import asyncio

from celery import Celery

from margindesk.config import settings

celery_app = Celery(
    "margindesk",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        # Cancel entry orders past their expiration date
        "expire-entry-orders-1m": {
            "task": "margindesk.tasks.order_tasks.expire_entry_orders",
            "schedule": 60.0,
        },
        # Mark every open portfolio to market and warn on low margin level
        "refresh-portfolios-5m": {
            "task": "margindesk.tasks.portfolio_tasks.refresh_all_portfolios",
            "schedule": 300.0,
        },
    },
)


def _run_async(coro):
    """Run an async coroutine from a sync Celery task."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# Import tasks so Celery discovers them
from margindesk.tasks import order_tasks, portfolio_tasks  # noqa: F401, E402
