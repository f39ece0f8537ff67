"""Operator alerts via the Telegram Bot API."""

from __future__ import annotations

import logging
import time

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

_ATTEMPTS = 2
_RETRY_DELAY_SECONDS = 2.0
_TIMEOUT_SECONDS = 15.0


class AlertRejected(Exception):
    """Telegram answered but refused the message (bad token, unknown chat)."""


def _format_alert(source: str, reason: str) -> str:
    return (
        f"[KEYWORD NOTIFIER ALERT]\n"
        f"Source '{source}' has stopped fetching and needs attention.\n"
        f"Reason: {reason}"
    )


def _post(bot_token: str, chat_id: str, text: str) -> int:
    """Send one message and return its Telegram message id."""
    response = httpx.post(
        f"{TELEGRAM_API_BASE}/bot{bot_token}/sendMessage",
        json={"chat_id": chat_id, "text": text},
        timeout=_TIMEOUT_SECONDS,
    )
    data = response.json()
    if not data.get("ok"):
        raise AlertRejected(data.get("description", "Unknown Telegram error"))
    return data["result"]["message_id"]


def send_source_failed_alert(
    bot_token: str | None,
    chat_id: str | None,
    source: str,
    reason: str,
) -> bool:
    """Tell the operator that ``source`` has halted.

    Returns True once Telegram accepts the message. Alerting is best-effort:
    when alerts are not configured, or every attempt fails, the failure is
    only logged and False is returned.
    """
    if not bot_token or not chat_id:
        logger.info("Alerts not configured; source %s failure only logged", source)
        return False

    text = _format_alert(source, reason)
    for attempt in range(1, _ATTEMPTS + 1):
        try:
            message_id = _post(bot_token, chat_id, text)
        except (httpx.HTTPError, ValueError, KeyError, AlertRejected) as exc:
            logger.warning(
                "Alert for %s not delivered (attempt %d/%d): %s",
                source, attempt, _ATTEMPTS, exc,
            )
            if attempt < _ATTEMPTS:
                time.sleep(_RETRY_DELAY_SECONDS)
            continue
        logger.info("Alert for %s sent: message_id=%d", source, message_id)
        return True

    logger.error("Giving up on alert for %s", source)
    return False
