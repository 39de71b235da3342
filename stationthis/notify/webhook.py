"""Outbound webhook delivery of terminal run events.

The target comes from the run's metadata (`webhook_url`). When a secret
is available the body is signed with HMAC-SHA256 in `X-StationThis-Signature`.
"""

from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import structlog

from stationthis.infra.errors import NotificationError
from stationthis.notify.dispatcher import Notifier
from stationthis.notify.events import RunTerminalEvent

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-StationThis-Signature"


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookNotifier(Notifier):
    def __init__(self, client: httpx.AsyncClient, *, default_secret: str = "") -> None:
        self._client = client
        self._default_secret = default_secret

    async def notify(self, event: RunTerminalEvent) -> None:
        url = event.run.metadata.get("webhook_url")
        if not url:
            logger.warning("webhook_notify_no_url", run_id=event.run.id)
            return

        body = json.dumps(event.as_payload(), separators=(",", ":"), default=str).encode()
        headers = {"Content-Type": "application/json"}
        secret = event.run.metadata.get("webhook_secret") or self._default_secret
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(body, secret)

        try:
            resp = await self._client.post(url, content=body, headers=headers)
        except httpx.TransportError as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e
        if resp.status_code >= 400:
            raise NotificationError(
                f"Webhook receiver returned {resp.status_code} for run {event.run.id}"
            )
        logger.info("webhook_notified", run_id=event.run.id, status_code=resp.status_code)
