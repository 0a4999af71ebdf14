"""Operator alerts over a Telegram bot; a no-op when the channel is not configured."""

from typing import Optional

import httpx

from campaign_sync.config import settings
from campaign_sync.logging_config import SERVICE_NAME, get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id

TELEGRAM_TEXT_LIMIT = 4096
MAX_LISTED_ERRORS = 10

LEVEL_ICONS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_ICONS.get(level, '📢')} *{level}* · {SERVICE_NAME}\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    if len(text) > TELEGRAM_TEXT_LIMIT:
        text = text[: TELEGRAM_TEXT_LIMIT - 1] + "…"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert to the configured chat.

    Args:
        level: INFO, WARNING or ERROR
        message: Alert body (Markdown)
        context: Optional key/value details rendered as a code block

    Returns:
        True if Telegram accepted the message
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning("Alert channel not configured", extra={"context": {"level": level, "alert": message}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
    except httpx.HTTPError as e:
        logger.error("Failed to send alert", extra={"context": {"level": level, "error": str(e)}})
        return False

    if response.status_code != 200:
        logger.error("Telegram rejected alert", extra={"context": {"status": response.status_code}})
        return False
    return True


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_sweep_errors(report) -> bool:
    """Forward a sweep report with errors; reports without errors are not sent."""
    if not report.errors:
        return False
    shown = report.errors[:MAX_LISTED_ERRORS]
    message = "Expiration sweep finished with errors:\n" + "\n".join(f"- {line}" for line in shown)
    if len(report.errors) > len(shown):
        message += f"\n... and {len(report.errors) - len(shown)} more"
    return alert_warning(
        message,
        {
            "campaigns_checked": report.campaigns_checked,
            "cards_checked": report.total_cards_checked,
            "cards_moved": report.total_cards_moved,
        },
    )
