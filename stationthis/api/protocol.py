from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from stationthis.pipeline.definitions import StepDefinition
from stationthis.pipeline.models import Run, RunKind, StepResult


class StartRunRequest(BaseModel):
    definition_id: str
    initiator_id: str
    parameter_overrides: dict[str, Any] = Field(default_factory=dict)
    platform: str = "none"
    notification_context: dict[str, Any] = Field(default_factory=dict)
    kind: RunKind = RunKind.cast
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("definition_id", "initiator_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("platform", mode="before")
    @classmethod
    def _normalize_platform(cls, v: Any) -> str:
        if v is None:
            return "none"
        if not isinstance(v, str):
            msg = f"platform must be a string (got {type(v).__name__})"
            raise ValueError(msg)
        return v.strip().lower() or "none"


class CancelRunRequest(BaseModel):
    reason: str = "Cancelled by request"


class PutSpellRequest(BaseModel):
    name: str = ""
    steps: list[StepDefinition] = Field(min_length=1)


class StepResultData(BaseModel):
    id: str
    step_index: int
    tool_id: str
    delivery_mode: str
    status: str
    external_ref: str | None
    output_payload: dict[str, Any] | None
    cost_delta: str
    duration_ms: int | None
    error: str | None
    is_final: bool
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_step(cls, step: StepResult) -> StepResultData:
        return cls(
            id=step.id,
            step_index=step.step_index,
            tool_id=step.tool_id,
            delivery_mode=step.delivery_mode.value,
            status=step.status.value,
            external_ref=step.external_ref,
            output_payload=step.output_payload,
            cost_delta=str(step.cost_delta),
            duration_ms=step.duration_ms,
            error=step.error,
            is_final=step.is_final,
            created_at=step.created_at,
            completed_at=step.completed_at,
        )


class RunData(BaseModel):
    id: str
    kind: str
    definition_id: str
    initiator_id: str
    platform: str
    status: str
    accumulated_cost: str
    step_result_ids: list[str]
    final_step_result_id: str | None
    failure_reason: str | None
    metadata: dict[str, Any]
    started_at: datetime
    completed_at: datetime | None
    steps: list[StepResultData] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run, steps: list[StepResult] | None = None) -> RunData:
        return cls(
            id=run.id,
            kind=run.kind.value,
            definition_id=run.definition_id,
            initiator_id=run.initiator_id,
            platform=run.platform,
            status=run.status.value,
            accumulated_cost=str(run.accumulated_cost),
            step_result_ids=list(run.step_result_ids),
            final_step_result_id=run.final_step_result_id,
            failure_reason=run.failure_reason,
            metadata=run.public_metadata,
            started_at=run.started_at,
            completed_at=run.completed_at,
            steps=[StepResultData.from_step(s) for s in steps or []],
        )


class WebhookAck(BaseModel):
    status: str = "ok"
    completed: bool = False


class ErrorData(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorData
