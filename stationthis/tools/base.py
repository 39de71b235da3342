from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from stationthis.pipeline.models import CompletionSignal, DeliveryMode


class BaseTool(ABC):
    """Abstract base class for execution engine tools."""

    @property
    @abstractmethod
    def tool_id(self) -> str:
        """Unique tool identifier referenced by step definitions."""
        ...

    @property
    @abstractmethod
    def delivery_mode(self) -> DeliveryMode:
        """How the result arrives: synchronously or via a completion callback."""
        ...

    @property
    def display_name(self) -> str:
        return self.tool_id

    @property
    def required_inputs(self) -> frozenset[str]:
        """Inputs that must be present after step input resolution."""
        return frozenset()

    @property
    def accepted_inputs(self) -> frozenset[str] | None:
        """Inputs forwarded to the engine. None forwards everything."""
        return None

    def select_inputs(self, inputs: dict[str, Any]) -> dict[str, Any]:
        accepted = self.accepted_inputs
        if accepted is None:
            return dict(inputs)
        return {k: v for k, v in inputs.items() if k in accepted}


class ImmediateTool(BaseTool):
    """Tool whose normalized result is available when the call returns."""

    @property
    def delivery_mode(self) -> DeliveryMode:
        return DeliveryMode.immediate

    @property
    def flat_cost(self) -> Decimal:
        return Decimal("0")

    @abstractmethod
    async def execute(self, inputs: dict[str, Any]) -> CompletionSignal:
        """Run the tool and return a normalized success signal.

        Raises InvocationError on failure (retryable=True for transient errors).
        """
        ...


class WebhookTool(BaseTool):
    """Tool backed by an engine that reports completion out-of-band."""

    @property
    def delivery_mode(self) -> DeliveryMode:
        return DeliveryMode.webhook

    @abstractmethod
    async def submit(self, inputs: dict[str, Any], *, webhook_url: str) -> str:
        """Queue the job and return the engine's external reference.

        Raises InvocationError on failure (retryable=True for transient errors).
        """
        ...

    @abstractmethod
    def parse_completion(self, payload: dict[str, Any]) -> CompletionSignal | None:
        """Normalize a completion callback. None for non-terminal progress events."""
        ...
