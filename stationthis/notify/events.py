from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from stationthis.pipeline.models import Run, RunStatus, StepResult


@dataclass
class RunTerminalEvent:
    """Emitted exactly once per run, by whoever moved it to a terminal status."""

    run: Run
    status: RunStatus
    final_step_result: StepResult | None = None
    failure_reason: str | None = None

    @property
    def platform(self) -> str:
        return self.run.platform

    def as_payload(self) -> dict[str, Any]:
        """JSON-safe body for outbound deliveries."""
        return {
            "run_id": self.run.id,
            "kind": self.run.kind.value,
            "definition_id": self.run.definition_id,
            "initiator_id": self.run.initiator_id,
            "platform": self.run.platform,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "accumulated_cost": str(self.run.accumulated_cost),
            "step_result_ids": list(self.run.step_result_ids),
            "final_step_result_id": (
                self.final_step_result.id if self.final_step_result else None
            ),
            "output": (
                self.final_step_result.output_payload if self.final_step_result else None
            ),
            "notification_context": self.run.notification_context,
            "metadata": self.run.public_metadata,
        }


class RunEventSink(ABC):
    @abstractmethod
    async def publish(self, event: RunTerminalEvent) -> None: ...
