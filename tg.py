# tg.py

from datetime import timedelta

import requests
from loguru import logger

from config import TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

REQUEST_TIMEOUT = 10


def send_telegram_message(message: str) -> None:
    """Send a message via Telegram Bot API."""
    if not TELEGRAM_BOT_TOKEN or not TELEGRAM_CHAT_ID:
        logger.warning("Telegram is not configured, message not sent.")
        return

    url = f"https://api.telegram.org/bot{TELEGRAM_BOT_TOKEN}/sendMessage"
    data = {"chat_id": TELEGRAM_CHAT_ID, "text": message}

    try:
        response = requests.post(url, data=data, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("Telegram message sent successfully.")
    except requests.RequestException as e:
        logger.error(f"Failed to send Telegram message: {e}")


def format_duration(duration: timedelta) -> str:
    """Render a duration as hours and minutes, e.g. "2 h. 5 min."."""
    hours, minutes = divmod(int(duration.total_seconds()) // 60, 60)
    if not hours:
        return f"{minutes} min."
    if not minutes:
        return f"{hours} h."
    return f"{hours} h. {minutes} min."
