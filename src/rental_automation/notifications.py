"""Push-style notifications via an optional webhook."""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    """Posts operator notifications to a webhook. Never raises."""

    def __init__(self, url: Optional[str], timeout: float = 10.0):
        self._url = url
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def notify(self, message: str, title: str = "Rental Automation") -> None:
        """Send a notification.

        Args:
            message: Notification body
            title: Notification title
        """
        logger.warning(f"NOTIFICATION: {title}: {message}")
        if not self._url:
            return
        try:
            client = await self._get_client()
            response = await client.post(self._url, json={"title": title, "message": message})
            response.raise_for_status()
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
