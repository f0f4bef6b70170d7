"""Optional outbound alerting through a Slack-compatible incoming webhook.

Alerts are best effort: they are sent off the reconciliation path and a
failed alert is logged, never retried or propagated to the caller.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT_SECONDS = 10.0


class NotificationError(Exception):
    """Raised when the webhook does not acknowledge a message."""

    pass


class WebhookNotifier:
    """Posts ``{"text": message}`` to a webhook URL.

    A message counts as delivered only when the response has a 2xx status
    and its body is ``ok`` (surrounding whitespace ignored).
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport
        self._pending: set[asyncio.Task[None]] = set()

    def send(self, message: str) -> None:
        """Send ``message`` synchronously.

        Raises:
            NotificationError: On transport failure or a non-ok response.
        """
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as http:
                response = http.post(self._webhook_url, json={"text": message})
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook request failed: {e}") from e

        if not response.is_success or response.text.strip() != "ok":
            raise NotificationError(
                f"Non-ok response returned from webhook: {response.status_code} "
                f"{response.text[:200]!r}"
            )

    async def _deliver(self, message: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.send, message)
        except NotificationError as e:
            logger.warning("Failed to send notification", extra={"error": str(e)})

    def notify(self, message: str) -> asyncio.Task[None]:
        """Send ``message`` in the background from within the event loop."""
        task = asyncio.get_running_loop().create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight notifications."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
