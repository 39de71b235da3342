"""Coordinator domain types: runs, step results, completion signals.

These are plain dataclasses read from and written to the RecordStore.
They never hold state across completions; every reconciliation re-reads them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from stationthis.pipeline.definitions import SpellDefinition

# Delivery settings carried in run metadata; never echoed to clients or receivers
DELIVERY_METADATA_KEYS = frozenset({"webhook_url", "webhook_secret"})


class RunKind(StrEnum):
    cast = "cast"
    cook = "cook"


class RunStatus(StrEnum):
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.running


class StepStatus(StrEnum):
    pending = "pending"
    success = "success"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not StepStatus.pending


class DeliveryMode(StrEnum):
    immediate = "immediate"
    webhook = "webhook"


@dataclass
class Run:
    id: str
    definition: SpellDefinition
    initiator_id: str
    kind: RunKind = RunKind.cast
    platform: str = "none"
    status: RunStatus = RunStatus.running
    accumulated_cost: Decimal = Decimal("0")
    step_result_ids: list[str] = field(default_factory=list)
    initial_context: dict[str, Any] = field(default_factory=dict)
    notification_context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    final_step_result_id: str | None = None
    failure_reason: str | None = None
    version: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def definition_id(self) -> str:
        return self.definition.slug

    @property
    def step_count(self) -> int:
        return len(self.definition.steps)

    @property
    def public_metadata(self) -> dict[str, Any]:
        return {k: v for k, v in self.metadata.items() if k not in DELIVERY_METADATA_KEYS}


@dataclass
class StepResult:
    id: str
    run_id: str
    step_index: int
    tool_id: str
    delivery_mode: DeliveryMode
    status: StepStatus = StepStatus.pending
    input_context: dict[str, Any] = field(default_factory=dict)
    resolved_inputs: dict[str, Any] = field(default_factory=dict)
    external_ref: str | None = None
    raw_payload: dict[str, Any] | None = None
    output_payload: dict[str, Any] | None = None
    cost_delta: Decimal = Decimal("0")
    duration_ms: int | None = None
    error: str | None = None
    is_final: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ToolOutput:
    """Canonical output payload: the only shape exposed to the next step.

    Every tool category adapter normalizes its raw reply into this.
    """

    text: str | None = None
    images: tuple[str, ...] = ()
    videos: tuple[str, ...] = ()
    fields: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.fields)
        if self.text is not None:
            payload["text"] = self.text
        if self.images:
            payload["images"] = [{"url": url} for url in self.images]
        if self.videos:
            payload["videos"] = [{"url": url} for url in self.videos]
        return payload


@dataclass(frozen=True)
class CompletionSignal:
    """Terminal outcome of one step, from either delivery path."""

    status: StepStatus
    output: ToolOutput | None = None
    raw_payload: dict[str, Any] | None = None
    cost_delta: Decimal = Decimal("0")
    duration_ms: int | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError("CompletionSignal status must be terminal")
        if self.cost_delta < 0:
            raise ValueError(f"cost_delta must be >= 0, got {self.cost_delta}")

    @classmethod
    def success(
        cls,
        output: ToolOutput,
        *,
        raw_payload: dict[str, Any] | None = None,
        cost_delta: Decimal = Decimal("0"),
        duration_ms: int | None = None,
    ) -> CompletionSignal:
        return cls(
            status=StepStatus.success,
            output=output,
            raw_payload=raw_payload,
            cost_delta=cost_delta,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        raw_payload: dict[str, Any] | None = None,
        cost_delta: Decimal = Decimal("0"),
        duration_ms: int | None = None,
    ) -> CompletionSignal:
        return cls(
            status=StepStatus.failed,
            raw_payload=raw_payload,
            cost_delta=cost_delta,
            duration_ms=duration_ms,
            error=error,
        )

    @classmethod
    def from_step(cls, step: StepResult) -> CompletionSignal:
        """Rebuild the signal a terminal Step Result was closed with."""
        if step.status is StepStatus.failed:
            return cls.failure(
                step.error or "unknown error",
                raw_payload=step.raw_payload,
                cost_delta=step.cost_delta,
                duration_ms=step.duration_ms,
            )
        return cls(
            status=step.status,
            output=ToolOutput(fields=dict(step.output_payload or {})),
            raw_payload=step.raw_payload,
            cost_delta=step.cost_delta,
            duration_ms=step.duration_ms,
        )

    def as_patch(self) -> dict[str, Any]:
        """Partial Step Result update for the pending -> terminal transition."""
        return {
            "status": self.status,
            "raw_payload": self.raw_payload,
            "output_payload": self.output.as_payload() if self.output else None,
            "cost_delta": self.cost_delta,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "completed_at": datetime.now(UTC),
        }
