from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

CLIENT = "client"
STAFF = "staff"


class NotificationSender(ABC):
    @abstractmethod
    async def notify(self, application_id: UUID, channel: str, template_key: str) -> None:
        raise NotImplementedError


class LoggingNotificationSender(NotificationSender):
    async def notify(self, application_id: UUID, channel: str, template_key: str) -> None:
        logger.info(
            "Notification %s queued for %s",
            template_key,
            channel,
            extra={"application_id": str(application_id)},
        )


class HttpNotificationSender(NotificationSender):
    """Hands notifications to the messaging service over HTTP."""

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 5.0) -> None:
        self._url = url
        self._client = client
        self._timeout = timeout

    async def notify(self, application_id: UUID, channel: str, template_key: str) -> None:
        payload = {
            "application_id": str(application_id),
            "channel": channel,
            "template_key": template_key,
        }
        if self._client is not None:
            response = await self._client.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()


async def notify_quietly(
    sender: NotificationSender,
    application_id: UUID,
    channel: str,
    template_key: str,
) -> None:
    try:
        await sender.notify(application_id, channel, template_key)
    except Exception as exc:
        logger.warning(
            "Notification %s to %s failed: %s",
            template_key,
            channel,
            exc,
            extra={"application_id": str(application_id)},
        )
