"""Price change notifications.

After a run that found prices, the notification check compares the product's
current lowest price with the lowest price of the previous scrape batch and
sends a message on every enabled config whose trigger matches. Delivery is
best effort: failures are logged and never reach the run that triggered them.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import aiohttp
from telegram import Bot
from telegram.error import TelegramError

from ..config import config
from ..models import (
    NotificationConfig,
    NotificationPayload,
    NotificationTrigger,
    RunOutcome,
    TrackedTarget,
)
from .storage import SQLiteStorage

logger = logging.getLogger(__name__)

COLOR_DROP = 0x22C55E
COLOR_INCREASE = 0xEF4444
COLOR_NEW = 0x3B82F6
FOOTER_TEXT = "Price Tracker"


class NotificationChannel(Protocol):
    """Delivers a payload to one destination (webhook URL, chat id)."""

    async def send(self, target: str, payload: NotificationPayload) -> bool: ...


def format_price(price: Decimal, currency: str | None = None) -> str:
    currency = currency or config.notifications.currency
    return f"${price:,.2f} {currency}"


def _title(change_type: str) -> tuple[str, str]:
    if change_type == "drop":
        return "📉", "Price Drop!"
    if change_type == "increase":
        return "📈", "Price Increase"
    return "🆕", "New Price"


def _change_text(payload: NotificationPayload) -> str:
    if payload.old_price is None or payload.change_percent is None:
        return ""
    sign = "-" if payload.change_type == "drop" else "+"
    return f"{sign}{abs(payload.change_percent):.1f}%"


def build_discord_embed(payload: NotificationPayload) -> dict[str, Any]:
    """Discord webhook embed for a price change."""
    emoji, title = _title(payload.change_type)
    color = {"drop": COLOR_DROP, "increase": COLOR_INCREASE}.get(payload.change_type, COLOR_NEW)

    fields = [
        {"name": "Retailer", "value": payload.retailer_name, "inline": True},
        {"name": "New Price", "value": format_price(payload.new_price), "inline": True},
    ]
    if payload.old_price is not None:
        fields.append(
            {
                "name": "Previous Price",
                "value": f"{format_price(payload.old_price)} ({_change_text(payload)})",
                "inline": True,
            }
        )

    embed: dict[str, Any] = {
        "title": f"{emoji} {title}",
        "description": payload.product_name,
        "color": color,
        "fields": fields,
        "timestamp": datetime.now(UTC).isoformat(),
        "footer": {"text": FOOTER_TEXT},
    }
    if payload.product_url:
        embed["url"] = payload.product_url
    return embed


def build_text_message(payload: NotificationPayload) -> str:
    """Plain Markdown message for chat channels."""
    emoji, title = _title(payload.change_type)
    lines = [
        f"{emoji} *{title}*",
        payload.product_name,
        "",
        f"Retailer: {payload.retailer_name}",
        f"New price: {format_price(payload.new_price)}",
    ]
    if payload.old_price is not None:
        lines.append(f"Previous price: {format_price(payload.old_price)} ({_change_text(payload)})")
    if payload.product_url:
        lines.append(payload.product_url)
    return "\n".join(lines)


class DiscordChannel:
    """Posts embeds to a Discord webhook URL."""

    def __init__(self, session_factory: Callable[[], aiohttp.ClientSession] | None = None):
        self.session_factory = session_factory or (
            lambda: aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=config.notifications.webhook_timeout)
            )
        )

    async def send(self, target: str, payload: NotificationPayload) -> bool:
        try:
            async with self.session_factory() as session:
                async with session.post(target, json={"embeds": [build_discord_embed(payload)]}) as response:
                    if response.status >= 400:
                        logger.error(f"Discord webhook returned HTTP {response.status}")
                        return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Failed to send Discord notification: {e}")
            return False

        logger.info(f"Discord notification sent for {payload.product_name}")
        return True


class TelegramChannel:
    """Sends messages to a Telegram chat id through a bot."""

    def __init__(self, token: str | None = None, bot_factory: Callable[[str], Bot] | None = None):
        self.token = token if token is not None else config.notifications.telegram_bot_token
        self.bot_factory = bot_factory or Bot

    async def send(self, target: str, payload: NotificationPayload) -> bool:
        if not self.token:
            logger.warning("Telegram bot token is not configured; skipping notification")
            return False

        try:
            async with self.bot_factory(self.token) as bot:
                await bot.send_message(
                    chat_id=target,
                    text=build_text_message(payload),
                    parse_mode="Markdown",
                    disable_web_page_preview=True,
                )
        except TelegramError as e:
            logger.error(f"Failed to send Telegram notification: {e}")
            return False

        logger.info(f"Telegram notification sent for {payload.product_name}")
        return True


def evaluate_trigger(
    notification: NotificationConfig, current: Decimal, previous: Decimal | None
) -> str | None:
    """Decide whether a config fires for a price change.

    Args:
        notification: Config to evaluate.
        current: Current lowest price.
        previous: Lowest price of the previous scrape batch, None on first scrape.

    Returns:
        Change type (``drop``, ``increase`` or ``new``), or None to stay quiet.
    """
    trigger = notification.trigger_type

    if trigger is NotificationTrigger.BELOW_THRESHOLD:
        threshold = notification.threshold_value
        if threshold is None or current > threshold:
            return None
        if previous is None or previous > threshold:
            return "drop"
        return None

    if previous is None:
        return "new" if trigger is NotificationTrigger.ANY_CHANGE else None

    if current < previous and trigger in (NotificationTrigger.PRICE_DROP, NotificationTrigger.ANY_CHANGE):
        return "drop"
    if current > previous and trigger in (NotificationTrigger.PRICE_INCREASE, NotificationTrigger.ANY_CHANGE):
        return "increase"
    return None


class NotificationService:
    """Checks price changes and dispatches notifications.

    Attributes:
        storage: Persistence backend for configs and price history.
        channels: Channel implementations keyed by channel name.
    """

    def __init__(self, storage: SQLiteStorage, channels: dict[str, NotificationChannel] | None = None):
        self.storage = storage
        self.channels = channels if channels is not None else {
            "discord": DiscordChannel(),
            "telegram": TelegramChannel(),
        }

    async def on_run_completed(self, target: TrackedTarget, outcome: RunOutcome) -> None:
        """Post-run hook for the executor."""
        await self.check_notifications(target.product_id)

    async def check_notifications(self, product_id: int) -> int:
        """Send notifications for a product's latest price change.

        Never raises.

        Returns:
            Number of notifications delivered.
        """
        try:
            return await self._check(product_id)
        except Exception as e:
            logger.error(f"Error checking notifications for product {product_id}: {e}")
            return 0

    async def _check(self, product_id: int) -> int:
        product = self.storage.get_product_by_id(product_id)
        if product is None:
            logger.info(f"Product {product_id} not found, skipping notifications")
            return 0

        configs = [c for c in self.storage.get_notification_configs_for_product(product_id) if c.enabled]
        if not configs:
            logger.debug(f"No enabled notification configs for product {product_id}")
            return 0

        latest = self.storage.get_latest_prices_for_product(product_id)
        if not latest:
            return 0

        current = latest[0]
        previous = self.storage.get_previous_lowest_price(product_id)
        logger.info(
            f"Product {product.name}: current={current.price}, "
            f"previous={previous if previous is not None else 'N/A'}"
        )

        sent = 0
        for notification in configs:
            change_type = evaluate_trigger(notification, current.price, previous)
            if change_type is None:
                continue

            change_percent = None
            if previous:
                change_percent = float(abs((current.price - previous) / previous * 100))

            payload = NotificationPayload(
                product_id=product.id,
                product_name=product.name,
                old_price=previous,
                new_price=current.price,
                retailer_name=current.retailer_name,
                change_type=change_type,
                change_percent=change_percent,
                product_url=current.product_url,
            )

            channel = self.channels.get(notification.channel)
            if channel is None:
                logger.warning(f"Unknown notification channel: {notification.channel}")
                continue

            logger.info(f"Sending {notification.channel} notification for {product.name}")
            if await channel.send(notification.target, payload):
                sent += 1
        return sent

    async def send_test_notification(self, channel_name: str, target: str) -> bool:
        """Send a sample price drop to check a channel's configuration."""
        channel = self.channels.get(channel_name)
        if channel is None:
            return False
        payload = NotificationPayload(
            product_id=0,
            product_name="Test Product",
            old_price=Decimal("199.99"),
            new_price=Decimal("149.99"),
            retailer_name="Test Retailer",
            change_type="drop",
            change_percent=25.0,
        )
        return await channel.send(target, payload)
