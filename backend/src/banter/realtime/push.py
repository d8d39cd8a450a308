"""Push notification senders."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class PushDeliveryError(RuntimeError):
    """The push provider rejected or did not answer a notification request."""


class PushSender(Protocol):
    async def send(self, token: str, *, title: str, body: str, data: dict[str, str]) -> None:
        ...


class FcmPushSender:
    """Sends data messages through the Firebase Cloud Messaging HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        server_key: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._headers = {
            "Authorization": f"key={server_key}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout
        self._client = client

    async def send(self, token: str, *, title: str, body: str, data: dict[str, str]) -> None:
        payload: dict[str, Any] = {
            "to": token,
            "notification": {"title": title, "body": body},
            "data": data,
        }
        try:
            if self._client is not None:
                response = await self._client.post(
                    self._endpoint, json=payload, headers=self._headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._endpoint, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"FCM request failed: {exc}") from exc
        logger.debug("Push notification accepted by FCM", extra={"status": response.status_code})
