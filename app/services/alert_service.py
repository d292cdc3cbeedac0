"""Operator alerts posted to a Telegram chat."""

from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token or None
ALERT_CHAT_ID = settings.alert_chat_id or None

LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '📢')} *replydesk {level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items() if v is not None)
        if context_str:
            text += f"\n\n```\n{context_str}\n```"
    return text


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the operator chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (event_id, merchant_id, error, ...)

    Returns:
        True if sent successfully. Never raises.
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("ERROR", message, context)


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("CRITICAL", message, context)


async def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("WARNING", message, context)
