"""Tests for the pure completion decision."""

from __future__ import annotations

from stationthis.pipeline.definitions import SpellDefinition
from stationthis.pipeline.models import (
    CompletionSignal,
    DeliveryMode,
    Run,
    RunStatus,
    StepResult,
    ToolOutput,
)
from stationthis.pipeline.reconciler import Advance, Fail, Finalize, Halt, reconcile


def _run(steps: list[dict], **kwargs) -> Run:
    spell = SpellDefinition.model_validate({"slug": "s", "steps": steps})
    return Run(id="r1", definition=spell, initiator_id="u1", **kwargs)


def _step(index: int, context: dict | None = None) -> StepResult:
    return StepResult(
        id=f"sr{index}",
        run_id="r1",
        step_index=index,
        tool_id="t",
        delivery_mode=DeliveryMode.immediate,
        input_context=context or {},
    )


class TestReconcile:
    def test_advance_builds_next_context(self) -> None:
        run = _run([
            {"toolId": "t", "outputMappings": {"output_text": "input_prompt"}},
            {"toolId": "t"},
        ])
        signal = CompletionSignal.success(ToolOutput(text="hi"))
        decision = reconcile(run, _step(0, {"seed": 1}), signal)
        assert isinstance(decision, Advance)
        assert decision.next_index == 1
        assert decision.next_context == {"seed": 1, "text": "hi", "input_prompt": "hi"}

    def test_last_step_finalizes(self) -> None:
        run = _run([{"toolId": "t"}])
        signal = CompletionSignal.success(ToolOutput(images=("u",)))
        decision = reconcile(run, _step(0), signal)
        assert isinstance(decision, Finalize)
        assert decision.final_output == {"images": [{"url": "u"}]}
        assert decision.final_context["input_image"] == "u"

    def test_failure_fails_run(self) -> None:
        run = _run([{"toolId": "t"}, {"toolId": "t"}])
        decision = reconcile(run, _step(0), CompletionSignal.failure("boom"))
        assert isinstance(decision, Fail)
        assert "Step 0 (t) failed: boom" == decision.reason

    def test_terminal_run_halts(self) -> None:
        run = _run([{"toolId": "t"}], status=RunStatus.cancelled)
        decision = reconcile(run, _step(0), CompletionSignal.success(ToolOutput(text="x")))
        assert isinstance(decision, Halt)
