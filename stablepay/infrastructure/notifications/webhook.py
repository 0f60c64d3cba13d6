from __future__ import annotations

import logging
from typing import Optional

import httpx

from stablepay.domain.models.payment_request import StatusEvent

log = logging.getLogger("payments.notify")


class WebhookNotifier:
    """
    Listener для NotificationHub: отправляет POST с JSON-событием на внешний URL.
    Best-effort: ошибки сети и ответы 4xx/5xx только логируются.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.verify = verify
        self._transport = transport

    async def __call__(self, event: StatusEvent) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                verify=self.verify,
                transport=self._transport,
            ) as cli:
                resp = await cli.post(self.url, json=event.as_dict())
                if resp.status_code >= 400:
                    log.warning(
                        "Webhook rejected id=%s status=%s http=%s body=%s",
                        event.request_id,
                        event.status.value,
                        resp.status_code,
                        resp.text[:200],
                    )
        except httpx.HTTPError as e:
            log.warning("Failed to send webhook id=%s err=%s", event.request_id, e)
