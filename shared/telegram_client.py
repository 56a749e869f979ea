"""
Telegram client for delivering student notifications.

TelegramNotifier implements the NotifierPort over the Telegram Bot API
`sendMessage` method. Messages are sent with parse_mode=HTML, matching the
templates in scheduling.services.notification_templates.

Transient failures (network errors, 429/5xx) are retried a few times with
tenacity; every call goes through the telegram circuit breaker. A response
with `ok: false` raises NotificationDeliveryError so the dispatcher records
a failed attempt.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from scheduling.errors import NotificationDeliveryError
from scheduling.ports import DeliveryReceipt
from shared.circuit_breaker import call_with_breaker, notifier_breaker
from shared.config import Settings, get_settings
from shared.resilient_api import is_retryable_error

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than this
MAX_MESSAGE_LENGTH = 4096


class TelegramNotifier:
    """Send messages to students' Telegram chats."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self.api_url = f"{settings.TELEGRAM_API_URL.rstrip('/')}/bot{settings.TELEGRAM_BOT_TOKEN}"
        self.timeout = settings.NOTIFIER_TIMEOUT_SECONDS
        self._client = client

        logger.info("TelegramNotifier initialized")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _post(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._client is not None:
            response = await self._client.post(
                f"{self.api_url}/{method}", json=payload, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.api_url}/{method}", json=payload, timeout=self.timeout
                )

        if response.status_code == 429 or response.status_code >= 500:
            response.raise_for_status()
        return response.json()

    async def send(
        self,
        recipient: str,
        text: str,
        options: dict[str, Any] | None = None,
    ) -> DeliveryReceipt:
        """
        Send `text` to the chat `recipient`.

        Args:
            recipient: Telegram chat id
            text: HTML-formatted message body
            options: Optional flags; `silent` disables the notification sound

        Returns:
            DeliveryReceipt with the Telegram message id

        Raises:
            NotificationDeliveryError: Telegram refused the message
        """
        options = options or {}
        payload = {
            "chat_id": recipient,
            "text": text[:MAX_MESSAGE_LENGTH],
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if options.get("silent"):
            payload["disable_notification"] = True

        try:
            data = await call_with_breaker(notifier_breaker, self._post, "sendMessage", payload)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error sending Telegram message: {e}")
            raise NotificationDeliveryError(
                f"Telegram request failed: {e}", {"recipient": recipient}
            ) from e

        if not data.get("ok"):
            description = data.get("description", "unknown error")
            logger.error(f"Telegram rejected message to chat {recipient}: {description}")
            raise NotificationDeliveryError(
                f"Telegram rejected message: {description}",
                {"recipient": recipient, "error_code": data.get("error_code")},
            )

        message_id = str(data.get("result", {}).get("message_id", ""))
        logger.debug(f"Telegram message {message_id} sent to chat {recipient}")
        return DeliveryReceipt(message_id=message_id or None, delivered=False)
