"""SpellCoordinator: drives a run from its first dispatch to its terminal event.

Step N+1 is dispatched only from inside the reconciliation of step N, and
every reconciliation re-reads the Run and Step Result from the store, so
any worker process can pick up any completion.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from stationthis.gateway.invocation import ToolInvocationGateway
from stationthis.infra.errors import (
    AggregationConflict,
    DefinitionError,
    DuplicateCompletionError,
    DuplicateDispatchError,
    GatewayError,
    RunStateError,
    StepResultNotFoundError,
)
from stationthis.notify.events import RunEventSink, RunTerminalEvent
from stationthis.pipeline.aggregator import RunAggregator
from stationthis.pipeline.definitions import SpellDefinition
from stationthis.pipeline.models import (
    CompletionSignal,
    Run,
    RunKind,
    RunStatus,
    StepResult,
    StepStatus,
)
from stationthis.pipeline.reconciler import Advance, Fail, Finalize, Halt, reconcile
from stationthis.pipeline.resolver import resolve_step_inputs
from stationthis.store.records import RecordStore
from stationthis.tools.base import WebhookTool
from stationthis.tools.registry import ToolRegistry

logger = structlog.get_logger()


class SpellCoordinator:
    def __init__(
        self,
        store: RecordStore,
        registry: ToolRegistry,
        gateway: ToolInvocationGateway,
        aggregator: RunAggregator,
        *,
        event_sink: RunEventSink | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._gateway = gateway
        self._aggregator = aggregator
        self._event_sink = event_sink

    # -- run lifecycle ------------------------------------------------------

    async def start_run(
        self,
        definition_id: str | None = None,
        *,
        initiator_id: str,
        spell: SpellDefinition | None = None,
        parameter_overrides: dict[str, Any] | None = None,
        platform: str = "none",
        notification_context: dict[str, Any] | None = None,
        kind: RunKind = RunKind.cast,
        metadata: dict[str, Any] | None = None,
    ) -> Run:
        """Create a Run and dispatch its first step.

        parameter_overrides seed the pipeline context. Raises DefinitionError
        (after failing the run) when step 0 cannot be resolved.
        """
        if spell is None:
            if not definition_id:
                raise GatewayError("start_run needs a definition_id or a spell")
            spell = await self._store.get_spell(definition_id)

        run = Run(
            id=str(uuid.uuid4()),
            definition=spell,
            initiator_id=initiator_id,
            kind=kind,
            platform=platform,
            initial_context=dict(parameter_overrides or {}),
            notification_context=dict(notification_context or {}),
            metadata=dict(metadata or {}),
        )
        await self._store.create_run(run)
        logger.info(
            "run_started",
            run_id=run.id,
            definition_id=run.definition_id,
            kind=run.kind.value,
            steps=run.step_count,
            initiator_id=initiator_id,
        )

        with structlog.contextvars.bound_contextvars(run_id=run.id):
            await self.dispatch_step(
                run.id, 0, dict(run.initial_context), raise_definition_errors=True
            )
        return await self._store.get_run(run.id)

    async def cancel_run(self, run_id: str, reason: str = "Cancelled by request") -> Run:
        """Mark a running Run cancelled. In-flight engine jobs are not aborted."""
        run = await self._aggregator.terminate(run_id, RunStatus.cancelled, reason)
        if run is None:
            current = await self._store.get_run(run_id)
            raise RunStateError(f"Run {run_id} is already {current.status.value}")
        logger.info("run_cancelled", run_id=run_id, reason=reason)
        await self._publish(RunTerminalEvent(run=run, status=run.status, failure_reason=reason))
        return run

    async def resume_run(self, run_id: str) -> Run:
        """Continue a running Run whose last closed step was never reconciled.

        No-op when the run is terminal or its latest step is still pending.
        """
        steps = [s for s in await self._store.list_step_results(run_id) if not s.is_final]
        if not steps:
            run = await self._store.get_run(run_id)
            if run.status is RunStatus.running:
                logger.warning("run_resumed", run_id=run_id, step_index=0)
                with structlog.contextvars.bound_contextvars(run_id=run_id):
                    await self.dispatch_step(run_id, 0, dict(run.initial_context))
        elif await self._is_stalled(steps[-1]):
            latest = steps[-1]
            logger.warning(
                "run_resumed", run_id=run_id, step_index=latest.step_index
            )
            with structlog.contextvars.bound_contextvars(
                run_id=run_id, step_index=latest.step_index
            ):
                await self._reconcile(latest, CompletionSignal.from_step(latest))
        return await self._store.get_run(run_id)

    # -- dispatch -----------------------------------------------------------

    async def dispatch_step(
        self,
        run_id: str,
        step_index: int,
        context: dict[str, Any],
        *,
        raise_definition_errors: bool = False,
    ) -> None:
        run = await self._store.get_run(run_id)
        if run.status.is_terminal:
            logger.info(
                "dispatch_skipped",
                run_id=run_id,
                step_index=step_index,
                status=run.status.value,
            )
            return

        step_def = run.definition.steps[step_index]
        try:
            tool = self._registry.require(step_def.tool_id)
            inputs = resolve_step_inputs(
                context, step_def, tool.required_inputs, step_index=step_index
            )
        except DefinitionError as e:
            logger.warning(
                "step_definition_error",
                run_id=run_id,
                step_index=step_index,
                tool_id=step_def.tool_id,
                error=str(e),
            )
            await self._fail_run(run_id, str(e))
            if raise_definition_errors:
                raise
            return

        try:
            outcome = await self._gateway.dispatch(
                run_id=run_id,
                step_index=step_index,
                tool=tool,
                inputs=inputs,
                input_context=context,
            )
        except DuplicateDispatchError:
            logger.info("duplicate_dispatch_suppressed", run_id=run_id, step_index=step_index)
            return

        if outcome.signal is not None:
            await self.handle_completion(outcome.step_result.id, outcome.signal)

    # -- completion ---------------------------------------------------------

    async def handle_completion(self, step_result_id: str, signal: CompletionSignal) -> None:
        """Single reconciliation entry point for immediate and webhook completions.

        A repeated completion for a step that is already terminal is a no-op,
        unless the attempt that closed the step died before the run moved on.
        In that case reconciliation resumes from the persisted step.
        """
        try:
            step = await self._store.update_step_result(
                step_result_id, signal.as_patch(), expected_status=StepStatus.pending
            )
        except DuplicateCompletionError:
            step = await self._store.get_step_result(step_result_id)
            if not await self._is_stalled(step):
                logger.info("duplicate_completion_suppressed", step_result_id=step_result_id)
                return
            logger.warning(
                "completion_resumed",
                run_id=step.run_id,
                step_index=step.step_index,
                step_result_id=step.id,
            )
            signal = CompletionSignal.from_step(step)
        else:
            logger.info(
                "step_completed",
                run_id=step.run_id,
                step_index=step.step_index,
                step_result_id=step.id,
                tool_id=step.tool_id,
                status=step.status.value,
                cost_delta=str(step.cost_delta),
                duration_ms=step.duration_ms,
            )

        with structlog.contextvars.bound_contextvars(
            run_id=step.run_id, step_index=step.step_index
        ):
            await self._reconcile(step, signal)

    async def _is_stalled(self, step: StepResult) -> bool:
        """True if a terminal step's run is running but never moved past it."""
        if step.is_final or not step.status.is_terminal:
            return False
        run = await self._store.get_run(step.run_id)
        if run.status.is_terminal:
            return False
        if step.id not in run.step_result_ids:
            return True
        steps = await self._store.list_step_results(step.run_id)
        return not any(s.step_index > step.step_index for s in steps)

    async def _reconcile(self, step: StepResult, signal: CompletionSignal) -> None:
        run = await self._store.get_run(step.run_id)
        decision = reconcile(run, step, signal)

        if isinstance(decision, Halt):
            logger.warning(
                "late_completion_ignored",
                step_result_id=step.id,
                reason=decision.reason,
            )
            return

        if isinstance(decision, Fail):
            updated = await self._record(
                step,
                terminal_status=RunStatus.failed,
                failure_reason=decision.reason,
            )
            if updated is not None:
                logger.info("run_failed", reason=decision.reason)
                await self._publish(
                    RunTerminalEvent(
                        run=updated, status=updated.status, failure_reason=decision.reason
                    )
                )
            return

        if isinstance(decision, Finalize):
            final_id = str(uuid.uuid4())
            updated = await self._record(
                step,
                terminal_status=RunStatus.completed,
                final_step_result_id=final_id,
            )
            if updated is None:
                return
            final = await self._aggregator.finalize(
                updated, final_id, decision.final_context, decision.final_output
            )
            logger.info("run_completed", total_cost=str(updated.accumulated_cost))
            await self._publish(
                RunTerminalEvent(run=updated, status=updated.status, final_step_result=final)
            )
            return

        if isinstance(decision, Advance):
            updated = await self._record(step)
            if updated is None:
                return
            await self.dispatch_step(step.run_id, decision.next_index, decision.next_context)

    async def handle_webhook(
        self, payload: dict[str, Any], *, step_result_id: str | None = None
    ) -> bool:
        """Route an engine callback to its Step Result. True if it completed a step."""
        external_ref = payload.get("run_id")
        step: StepResult | None = None
        if step_result_id:
            try:
                step = await self._store.get_step_result(step_result_id)
            except StepResultNotFoundError:
                logger.warning("webhook_step_unknown", step_result_id=step_result_id)
        if step is None and external_ref:
            step = await self._store.find_step_by_external_ref(str(external_ref))
        if step is None:
            logger.warning(
                "webhook_unmatched",
                step_result_id=step_result_id,
                external_ref=external_ref,
            )
            return False

        if step.external_ref and external_ref and step.external_ref != str(external_ref):
            logger.warning(
                "webhook_ref_mismatch",
                step_result_id=step.id,
                expected=step.external_ref,
                got=external_ref,
            )
            return False

        tool = self._registry.get(step.tool_id)
        if not isinstance(tool, WebhookTool):
            logger.error("webhook_tool_unavailable", step_result_id=step.id, tool_id=step.tool_id)
            return False

        signal = tool.parse_completion(payload)
        if signal is None:
            logger.debug(
                "webhook_progress",
                step_result_id=step.id,
                status=payload.get("status"),
                event_type=payload.get("event_type"),
            )
            return False

        await self.handle_completion(step.id, signal)
        return True

    # -- helpers ------------------------------------------------------------

    async def _record(
        self,
        step: StepResult,
        *,
        terminal_status: RunStatus | None = None,
        failure_reason: str | None = None,
        final_step_result_id: str | None = None,
    ) -> Run | None:
        """Aggregate the step; on exhausted retries fail the run instead."""
        try:
            return await self._aggregator.record_step(
                step.run_id,
                step,
                terminal_status=terminal_status,
                failure_reason=failure_reason,
                final_step_result_id=final_step_result_id,
            )
        except AggregationConflict as e:
            logger.error("aggregation_failed", step_result_id=step.id, error=str(e))
            await self._fail_run(
                step.run_id, f"Could not record step {step.step_index}: {e}"
            )
            return None

    async def _fail_run(self, run_id: str, reason: str) -> None:
        run = await self._aggregator.terminate(run_id, RunStatus.failed, reason)
        if run is None:
            return
        logger.info("run_failed", run_id=run_id, reason=reason)
        await self._publish(RunTerminalEvent(run=run, status=run.status, failure_reason=reason))

    async def _publish(self, event: RunTerminalEvent) -> None:
        if self._event_sink is None:
            return
        try:
            await self._event_sink.publish(event)
        except Exception:
            logger.exception("run_event_publish_failed", run_id=event.run.id)
