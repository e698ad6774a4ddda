"""Alerting service: webhook notifications for fills, closes, margin warnings and system errors.

Posts to a Discord/Slack-compatible webhook. Without a webhook URL the alert
is only logged. Alerts never change account state.
"""

import logging
from enum import Enum

import httpx

from margindesk.config import settings

logger = logging.getLogger(__name__)


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# (emoji prefix, log level used when no webhook is configured)
_LEVEL_STYLE = {
    AlertLevel.INFO: ("ℹ️", logging.INFO),
    AlertLevel.WARNING: ("⚠️", logging.WARNING),
    AlertLevel.ERROR: ("❌", logging.ERROR),
    AlertLevel.CRITICAL: ("\U0001f6a8", logging.CRITICAL),
}


class AlertService:
    """Webhook alerts about account health."""

    def __init__(self, webhook_url: str | None = None) -> None:
        self._webhook_url = webhook_url if webhook_url is not None else settings.alert_webhook_url

    async def send(self, title: str, message: str, level: AlertLevel = AlertLevel.INFO) -> bool:
        """Deliver one alert. True only when the webhook accepted it."""
        emoji, log_level = _LEVEL_STYLE[level]
        if not self._webhook_url:
            logger.log(log_level, "ALERT [%s]: %s: %s", level.value, title, message)
            return False

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    self._webhook_url, json={"content": f"**{emoji} {title}**\n{message}"}
                )
        except httpx.HTTPError as e:
            logger.error("Alert webhook unreachable: %s", e)
            return False

        if resp.status_code not in (200, 204):
            logger.warning("Alert webhook returned %d: %s", resp.status_code, resp.text[:200])
            return False
        return True

    async def order_filled(
        self,
        user_id: str,
        is_paper: bool,
        symbol: str,
        trade_type: str,
        units: float,
        price: float,
        margin: float,
    ) -> bool:
        book = "paper" if is_paper else "live"
        return await self.send(
            title=f"Order Filled: {trade_type.upper()} {symbol} ({book})",
            message=(
                f"User: {user_id}\n"
                f"Units: {units:g} @ {price:,.5g}\n"
                f"Margin locked: {margin:,.2f}"
            ),
            level=AlertLevel.INFO,
        )

    async def position_closed(
        self,
        user_id: str,
        is_paper: bool,
        symbol: str,
        close_price: float,
        pnl: float,
    ) -> bool:
        book = "paper" if is_paper else "live"
        return await self.send(
            title=f"Position Closed: {symbol} ({book})",
            message=f"User: {user_id}\nClosed @ {close_price:,.5g}\nP&L: {pnl:+,.2f}",
            level=AlertLevel.INFO,
        )

    async def margin_warning(
        self,
        user_id: str,
        is_paper: bool,
        margin_level_pct: float,
        equity: float,
        used_margin: float,
    ) -> bool:
        """Margin level fell below the configured threshold."""
        book = "paper" if is_paper else "live"
        return await self.send(
            title=f"Margin Warning: {user_id} ({book})",
            message=(
                f"Margin level: {margin_level_pct:.1f}%\n"
                f"Equity: {equity:,.2f}\n"
                f"Used margin: {used_margin:,.2f}"
            ),
            level=AlertLevel.WARNING,
        )

    async def system_error(self, component: str, error: str) -> bool:
        """Alert on system-level error (DB down, feed failure, etc.)."""
        return await self.send(
            title=f"System Error: {component}",
            message=error,
            level=AlertLevel.CRITICAL,
        )
