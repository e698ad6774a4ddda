"""Portfolio monitoring tasks: mark-to-market and margin warnings.

Warnings only: nothing here closes or liquidates positions.
"""

import logging

from margindesk.tasks import _run_async, celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def refresh_all_portfolios() -> dict:
    """Revalue every book with open exposure at live quotes."""
    from margindesk.database import engine as db_engine

    async def _run() -> dict:
        try:
            return await refresh_books()
        finally:
            # Pooled connections are bound to this task's event loop
            await db_engine.dispose()

    return _run_async(_run())


async def refresh_books(engine=None, alerts=None) -> dict:
    """Refresh each book and raise a margin warning when its level is low."""
    from margindesk.config import settings
    from margindesk.services.alerting import AlertService
    from margindesk.services.engine import OrderEngine

    own_engine = engine is None
    engine = engine or OrderEngine()
    alerts = alerts or AlertService()
    refreshed = 0
    warnings = 0
    failures = 0

    try:
        for user_id, is_paper in await engine.books_with_exposure():
            res = await engine.refresh_portfolio(user_id, is_paper=is_paper)
            if not res.success:
                failures += 1
                logger.warning("Refresh failed for %s (paper=%s): %s", user_id, is_paper, res.message)
                if res.error == "persistence_failure":
                    await alerts.system_error("portfolio refresh", res.message)
                continue

            refreshed += 1
            account = res.data["account"]
            if account["used_margin"] > 0 and account["margin_level"] < settings.margin_call_level_pct:
                warnings += 1
                await alerts.margin_warning(
                    user_id,
                    is_paper,
                    account["margin_level"],
                    account["equity"],
                    account["used_margin"],
                )
    finally:
        # Quote source connections opened by an engine built here
        if own_engine:
            await engine.close()

    logger.info(
        "Portfolio refresh: %d books refreshed, %d margin warnings, %d failures",
        refreshed, warnings, failures,
    )
    return {"refreshed": refreshed, "warnings": warnings, "failures": failures}
