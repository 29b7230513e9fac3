"""Operational alerts posted to an ops Telegram chat."""

import os
from typing import Optional

import httpx

from auditbot.logging_config import get_logger

logger = get_logger("alert_service")


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the ops chat configured by ALERT_BOT_TOKEN / ALERT_CHAT_ID.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    bot_token = os.environ.get("ALERT_BOT_TOKEN")
    chat_id = os.environ.get("ALERT_CHAT_ID")
    if not bot_token or not chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("ERROR", message, context)
