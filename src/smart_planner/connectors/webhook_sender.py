# src/smart_planner/connectors/webhook_sender.py

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class WebhookNotificationSender:
    """
    NotificationSender that POSTs each notification as JSON to a webhook
    (e.g. a push-gateway that owns device tokens).

    Any non-2xx status or transport error is a delivery failure (returns False).
    """

    def __init__(
            self,
            url: str,
            *,
            timeout: float = 10.0,
            headers: dict[str, str] | None = None,
            client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"webhook URL must start with http:// or https://, got: {url!r}")
        self._url = url
        self._headers = {"Content-Type": "application/json", "User-Agent": "smart-planner/1.0", **(headers or {})}
        self._client = client or httpx.AsyncClient(timeout=float(timeout))
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def deliver(
            self,
            *,
            user_id: str,
            title: str,
            body: str,
            metadata: dict[str, Any],
    ) -> bool:
        payload = {
            "user_id": user_id,
            "notification": {"title": title, "body": body},
            "data": metadata,
        }
        try:
            r = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery error user=%s: %s", user_id, e.__class__.__name__)
            return False

        if not 200 <= r.status_code < 300:
            logger.warning("Webhook delivery rejected user=%s status=%s", user_id, r.status_code)
            return False
        return True
