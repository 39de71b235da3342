"""Completion decision: what a terminal step means for its run.

Pure function over persisted state. The coordinator performs the side
effects (step CAS, aggregation, dispatch) around it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from stationthis.pipeline.models import CompletionSignal, Run, StepResult, StepStatus
from stationthis.pipeline.outputs import build_next_context, map_outputs


@dataclass(frozen=True)
class Advance:
    next_index: int
    next_context: dict[str, Any]


@dataclass(frozen=True)
class Finalize:
    final_context: dict[str, Any]
    final_output: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fail:
    reason: str


@dataclass(frozen=True)
class Halt:
    """Run already terminal; the completion is recorded on the step only."""

    reason: str


Decision = Advance | Finalize | Fail | Halt


def failure_reason(step: StepResult, error: str | None) -> str:
    return f"Step {step.step_index} ({step.tool_id}) failed: {error or 'unknown error'}"


def reconcile(run: Run, step: StepResult, signal: CompletionSignal) -> Decision:
    """Decide the run's next transition from one step completion."""
    if run.status.is_terminal:
        return Halt(f"Run is already {run.status.value}")

    if signal.status is StepStatus.failed:
        return Fail(failure_reason(step, signal.error))

    payload = signal.output.as_payload() if signal.output else {}
    step_def = run.definition.steps[step.step_index]
    renamed = map_outputs(payload, step_def.output_mappings)
    next_context = build_next_context(step.input_context, payload, renamed)

    next_index = step.step_index + 1
    if next_index < run.step_count:
        return Advance(next_index=next_index, next_context=next_context)
    return Finalize(final_context=next_context, final_output=payload)
