"""Tool Invocation Gateway: Step Result creation + engine submission.

Every dispatch creates exactly one pending Step Result before the tool is
touched, for immediate and webhook tools alike. Submission retries are
bounded (exponential backoff with jitter) and live only here; a failed
submission becomes a failure CompletionSignal for the reconciler.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, replace
from typing import Any, TypeVar
from urllib.parse import urlencode

import structlog

from stationthis.infra.errors import DuplicateCompletionError, InvocationError
from stationthis.pipeline.models import CompletionSignal, StepResult, StepStatus
from stationthis.store.records import RecordStore
from stationthis.tools.base import BaseTool, ImmediateTool, WebhookTool

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one dispatch.

    signal is set for immediate completions and failed submissions;
    None means the step is pending an out-of-band completion.
    """

    step_result: StepResult
    signal: CompletionSignal | None = None

    @property
    def pending(self) -> bool:
        return self.signal is None


class ToolInvocationGateway:
    def __init__(
        self,
        store: RecordStore,
        *,
        webhook_url: str,
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._store = store
        self._webhook_url = webhook_url
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    def callback_url(self, step_result_id: str) -> str:
        """Webhook URL carrying our step id so callbacks never depend on the external ref."""
        sep = "&" if "?" in self._webhook_url else "?"
        return f"{self._webhook_url}{sep}{urlencode({'step_result_id': step_result_id})}"

    async def _retry_call(
        self,
        coro_factory: Callable[[], Coroutine[Any, Any, T]],
        *,
        context: str = "",
    ) -> T:
        """Execute a submission with exponential backoff retry.

        Retries only InvocationError(retryable=True); the last error propagates.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await coro_factory()
            except InvocationError as e:
                if not e.retryable or attempt == self._max_attempts:
                    raise
                delay = self._base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                logger.warning(
                    "invocation_retry",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay=round(delay, 2),
                    error=str(e),
                    context=context,
                )
                await asyncio.sleep(delay)
        # Unreachable, but satisfies type checker
        raise InvocationError("Retry loop exhausted")  # pragma: no cover

    async def dispatch(
        self,
        *,
        run_id: str,
        step_index: int,
        tool: BaseTool,
        inputs: dict[str, Any],
        input_context: dict[str, Any],
    ) -> DispatchOutcome:
        """Create the step's record, then submit it to the tool.

        Raises DuplicateDispatchError if this (run, step) was already dispatched.
        """
        step = StepResult(
            id=str(uuid.uuid4()),
            run_id=run_id,
            step_index=step_index,
            tool_id=tool.tool_id,
            delivery_mode=tool.delivery_mode,
            input_context=input_context,
            resolved_inputs=inputs,
        )
        await self._store.create_step_result(step)
        logger.info(
            "step_dispatched",
            run_id=run_id,
            step_index=step_index,
            step_result_id=step.id,
            tool_id=tool.tool_id,
            delivery_mode=tool.delivery_mode.value,
        )

        selected = tool.select_inputs(inputs)
        context = f"{tool.tool_id}:{step.id}"
        try:
            if isinstance(tool, ImmediateTool):
                started = time.monotonic()
                signal = await self._retry_call(lambda: tool.execute(selected), context=context)
                if signal.duration_ms is None:
                    signal = replace(
                        signal, duration_ms=int((time.monotonic() - started) * 1000)
                    )
                return DispatchOutcome(step_result=step, signal=signal)

            if isinstance(tool, WebhookTool):
                callback = self.callback_url(step.id)
                external_ref = await self._retry_call(
                    lambda: tool.submit(selected, webhook_url=callback), context=context
                )
                try:
                    step = await self._store.update_step_result(
                        step.id,
                        {"external_ref": external_ref},
                        expected_status=StepStatus.pending,
                    )
                except DuplicateCompletionError:
                    # Callback beat us here; completion is already being reconciled.
                    logger.info(
                        "step_completed_before_ref_stored",
                        step_result_id=step.id,
                        external_ref=external_ref,
                    )
                    step = replace(step, external_ref=external_ref)
                return DispatchOutcome(step_result=step)

            raise InvocationError(f"Unsupported tool type for '{tool.tool_id}'")
        except InvocationError as e:
            logger.warning(
                "step_invocation_failed",
                run_id=run_id,
                step_index=step_index,
                step_result_id=step.id,
                tool_id=tool.tool_id,
                error=str(e),
            )
            return DispatchOutcome(
                step_result=step, signal=CompletionSignal.failure(str(e))
            )
        except Exception as e:
            # The pending record already exists; it must be closed either way.
            logger.exception(
                "step_invocation_crashed",
                run_id=run_id,
                step_index=step_index,
                step_result_id=step.id,
                tool_id=tool.tool_id,
            )
            return DispatchOutcome(
                step_result=step,
                signal=CompletionSignal.failure(
                    f"Tool '{tool.tool_id}' crashed: {type(e).__name__}: {e}"
                ),
            )
