"""
Discord webhook notifications
"""

import asyncio
import aiohttp
from typing import Dict, Optional, Set
import logging

from ..utils.config_loader import NotificationConfig

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000

COLOR_BUY = 0x00FF00
COLOR_SELL = 0xFF0000


class DiscordNotifier:
    """
    Fire-and-forget webhook sender.

    send_* methods schedule a background task and return immediately; a
    failed delivery is logged and dropped.
    """

    def __init__(self, config: NotificationConfig):
        self.config = config
        self.webhook_url = config.discord_webhook_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: Set[asyncio.Task] = set()

        if not self.webhook_url:
            logger.warning("No Discord webhook URL configured. Notifications disabled.")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _post(self, payload: Dict) -> None:
        try:
            session = await self._get_session()
            async with session.post(self.webhook_url, json=payload) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.error(f"Discord webhook error {response.status}: {text[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Discord notification failed: {e}")

    def _schedule(self, payload: Dict) -> None:
        if not self.enabled:
            return
        task = asyncio.create_task(self._post(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def send_alert(self, text: str) -> None:
        """Send a plain text message"""
        self._schedule({"content": text[:MAX_MESSAGE_LENGTH]})

    def send_trade_alert(self, summary: Dict) -> None:
        """Send a trade execution embed"""
        side = summary.get("side", "BUY")
        fields = [
            {"name": "Price", "value": f"{summary.get('price', 0):.6g}", "inline": True},
            {"name": "Quantity", "value": f"{summary.get('quantity', 0):.6g}", "inline": True},
        ]
        if summary.get("take_profit") is not None:
            fields.append({"name": "Take Profit", "value": f"{summary['take_profit']:.6g}", "inline": True})
        if summary.get("stop_loss") is not None:
            fields.append({"name": "Stop Loss", "value": f"{summary['stop_loss']:.6g}", "inline": True})
        if summary.get("reason"):
            fields.append({"name": "Reason", "value": str(summary["reason"])[:1024]})

        self._schedule({
            "embeds": [{
                "title": f"{side} {summary.get('symbol', '')}",
                "color": COLOR_BUY if side == "BUY" else COLOR_SELL,
                "fields": fields,
            }]
        })

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for pending deliveries"""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    async def close(self):
        await self.flush(timeout=5)
        if self._session and not self._session.closed:
            await self._session.close()
