"""Order housekeeping tasks."""

import logging

from margindesk.tasks import _run_async, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=1)
def expire_entry_orders(self) -> dict:
    """Cancel pending entry orders whose expiration date has passed."""
    return _run_async(_expire_entry_orders_async())


async def _expire_entry_orders_async() -> dict:
    from margindesk.database import engine as db_engine
    from margindesk.services.engine import OrderEngine

    engine = OrderEngine()
    try:
        expired = await engine.expire_entry_orders()
    finally:
        await engine.close()
        # Pooled connections are bound to this task's event loop
        await db_engine.dispose()

    logger.info("Entry order expiry run: %d expired", expired)
    return {"expired": expired}
