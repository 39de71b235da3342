"""Run Aggregator: conditional parent-run updates with bounded retry.

Every Run write is a compare-and-set on (version, status='running'). On a
lost race the Run is re-read and the patch rebuilt from fresh state, so a
step id is appended (and its cost added) at most once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from stationthis.infra.errors import AggregationConflict
from stationthis.pipeline.models import (
    DeliveryMode,
    Run,
    RunStatus,
    StepResult,
    StepStatus,
)
from stationthis.store.records import RecordStore

logger = structlog.get_logger()

FINAL_TOOL_ID = "spell_final"

PatchBuilder = Callable[[Run], dict[str, Any]]


class RunAggregator:
    def __init__(self, store: RecordStore, *, max_attempts: int = 5) -> None:
        self._store = store
        self._max_attempts = max_attempts

    async def _apply(self, run_id: str, build_patch: PatchBuilder, *, op: str) -> Run | None:
        """Re-read, rebuild, CAS. Returns None if the Run is already terminal."""
        for attempt in range(1, self._max_attempts + 1):
            run = await self._store.get_run(run_id)
            if run.status.is_terminal:
                return None
            patch = build_patch(run)
            if not patch:
                return run
            try:
                return await self._store.update_run(
                    run_id, patch, expected_version=run.version
                )
            except AggregationConflict:
                logger.info(
                    "aggregation_conflict",
                    run_id=run_id,
                    op=op,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                )
                await asyncio.sleep(0)
        logger.error("aggregation_retries_exhausted", run_id=run_id, op=op)
        raise AggregationConflict(
            f"Run {run_id}: {op} lost {self._max_attempts} consecutive updates"
        )

    async def record_step(
        self,
        run_id: str,
        step: StepResult,
        *,
        terminal_status: RunStatus | None = None,
        failure_reason: str | None = None,
        final_step_result_id: str | None = None,
    ) -> Run | None:
        """Append the step to its run, add its cost, optionally close the run.

        Returns the updated Run, or None for a late completion on a
        terminal Run (which is left untouched).
        """
        if step.cost_delta < 0:
            raise ValueError(f"cost_delta must be >= 0, got {step.cost_delta}")

        def build_patch(run: Run) -> dict[str, Any]:
            patch: dict[str, Any] = {}
            if step.id not in run.step_result_ids:
                patch["step_result_ids"] = [*run.step_result_ids, step.id]
                patch["accumulated_cost"] = run.accumulated_cost + step.cost_delta
            if terminal_status is not None:
                patch.update(
                    _terminal_patch(terminal_status, failure_reason, final_step_result_id)
                )
            return patch

        run = await self._apply(run_id, build_patch, op="record_step")
        if run is None:
            logger.warning(
                "late_completion_ignored",
                run_id=run_id,
                step_result_id=step.id,
                step_index=step.step_index,
            )
        return run

    async def terminate(
        self, run_id: str, status: RunStatus, reason: str | None = None
    ) -> Run | None:
        """Move a running Run to a terminal status without a step. None if already terminal."""
        if not status.is_terminal:
            raise ValueError(f"terminate() needs a terminal status, got {status}")
        return await self._apply(
            run_id,
            lambda _run: _terminal_patch(status, reason, None),
            op=f"terminate:{status.value}",
        )

    async def finalize(
        self,
        run: Run,
        final_step_result_id: str,
        final_context: dict[str, Any],
        final_output: dict[str, Any],
    ) -> StepResult:
        """Create the synthetic Step Result summarizing a completed run."""
        now = datetime.now(UTC)
        final = StepResult(
            id=final_step_result_id,
            run_id=run.id,
            step_index=run.step_count,
            tool_id=FINAL_TOOL_ID,
            delivery_mode=DeliveryMode.immediate,
            status=StepStatus.success,
            input_context=final_context,
            output_payload={
                **final_output,
                "context": final_context,
                "stepResultIds": list(run.step_result_ids),
                "totalCost": str(run.accumulated_cost),
            },
            is_final=True,
            created_at=now,
            completed_at=now,
        )
        await self._store.create_step_result(final)
        logger.info(
            "run_finalized",
            run_id=run.id,
            final_step_result_id=final.id,
            total_cost=str(run.accumulated_cost),
        )
        return final


def _terminal_patch(
    status: RunStatus, reason: str | None, final_step_result_id: str | None
) -> dict[str, Any]:
    patch: dict[str, Any] = {"status": status, "completed_at": datetime.now(UTC)}
    if reason is not None:
        patch["failure_reason"] = reason
    if final_step_result_id is not None:
        patch["final_step_result_id"] = final_step_result_id
    return patch
