"""ComfyUI Deploy adapter: webhook-backed image/video workflows.

Submission queues a deployment run; the engine later POSTs run status
updates to our webhook. Only `success` and `failed` are terminal. Cost is
derived from the run duration reported in the callback itself, so any
process can price a completion without remembering when the run started.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
import structlog

from stationthis.infra.errors import InvocationError
from stationthis.pipeline.models import CompletionSignal
from stationthis.pipeline.outputs import normalize_engine_outputs
from stationthis.tools.base import WebhookTool

logger = structlog.get_logger()

TERMINAL_STATUSES = frozenset({"success", "failed"})
PROGRESS_STATUSES = frozenset({"not-started", "queued", "started", "running", "uploading"})

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def run_duration_seconds(payload: dict[str, Any]) -> float | None:
    """Duration from the callback: explicit seconds, else started/ended timestamps."""
    explicit = payload.get("run_duration_seconds")
    if isinstance(explicit, int | float) and explicit >= 0:
        return float(explicit)
    started = _parse_ts(payload.get("started_at"))
    ended = _parse_ts(payload.get("ended_at"))
    if started is None or ended is None or ended < started:
        return None
    return (ended - started).total_seconds()


class ComfyDeployTool(WebhookTool):
    def __init__(
        self,
        *,
        tool_id: str,
        deployment_id: str,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str,
        display_name: str = "",
        required_inputs: frozenset[str] = frozenset(),
        accepted_inputs: frozenset[str] | None = None,
        cost_per_second: Decimal = Decimal("0"),
    ) -> None:
        self._tool_id = tool_id
        self._deployment_id = deployment_id
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._display_name = display_name
        self._required = required_inputs
        self._accepted = accepted_inputs
        self._cost_per_second = cost_per_second

    @property
    def tool_id(self) -> str:
        return self._tool_id

    @property
    def display_name(self) -> str:
        return self._display_name or self._tool_id

    @property
    def required_inputs(self) -> frozenset[str]:
        return self._required

    @property
    def accepted_inputs(self) -> frozenset[str] | None:
        return self._accepted

    async def submit(self, inputs: dict[str, Any], *, webhook_url: str) -> str:
        body = {
            "deployment_id": self._deployment_id,
            "inputs": inputs,
            "webhook": webhook_url,
            "webhook_intermediate_status": True,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            resp = await self._client.post(
                f"{self._base_url}/run/deployment/queue", json=body, headers=headers
            )
        except httpx.TransportError as e:
            raise InvocationError(
                f"ComfyDeploy unreachable: {e}", retryable=True
            ) from e

        if resp.status_code >= 400:
            raise InvocationError(
                f"ComfyDeploy rejected run for '{self._tool_id}': "
                f"{resp.status_code} {resp.text[:200]}",
                retryable=resp.status_code in _RETRYABLE_STATUS,
            )

        try:
            reply = resp.json()
        except ValueError as e:
            raise InvocationError(
                f"ComfyDeploy returned a non-JSON body for '{self._tool_id}': "
                f"{resp.text[:200]}"
            ) from e
        run_id = reply.get("run_id") if isinstance(reply, dict) else None
        if not run_id:
            raise InvocationError(f"ComfyDeploy response missing run_id for '{self._tool_id}'")
        logger.info("comfydeploy_run_queued", tool_id=self._tool_id, external_ref=run_id)
        return str(run_id)

    def parse_completion(self, payload: dict[str, Any]) -> CompletionSignal | None:
        status = payload.get("status")
        if status not in TERMINAL_STATUSES:
            if status not in PROGRESS_STATUSES:
                logger.warning(
                    "comfydeploy_unknown_status", tool_id=self._tool_id, status=status
                )
            return None

        duration = run_duration_seconds(payload)
        duration_ms = int(duration * 1000) if duration is not None else None
        cost = Decimal("0")
        if duration is not None:
            cost = (self._cost_per_second * Decimal(str(duration))).quantize(
                Decimal("0.000001")
            )

        if status == "failed":
            reason = payload.get("error") or payload.get("live_status") or "Engine reported failure"
            return CompletionSignal.failure(
                str(reason), raw_payload=payload, cost_delta=cost, duration_ms=duration_ms,
            )
        return CompletionSignal.success(
            normalize_engine_outputs(payload.get("outputs")),
            raw_payload=payload,
            cost_delta=cost,
            duration_ms=duration_ms,
        )
