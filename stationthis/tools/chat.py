"""Immediate text tool over an OpenAI-compatible chat completions endpoint.

Works with OpenAI and any OpenAI-compatible endpoint (Gemini, Ollama).
Transient API errors surface as retryable InvocationError; the gateway owns
the retry loop.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)

from stationthis.infra.errors import InvocationError
from stationthis.pipeline.models import CompletionSignal
from stationthis.pipeline.outputs import normalize_output
from stationthis.tools.base import ImmediateTool

logger = structlog.get_logger()

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError)

PROMPT_INPUT = "input_prompt"
INSTRUCTIONS_INPUT = "input_instructions"


class ChatCompletionTool(ImmediateTool):
    def __init__(
        self,
        *,
        tool_id: str,
        client: AsyncOpenAI,
        model: str,
        display_name: str = "",
        instructions: str = "",
        temperature: float | None = None,
        flat_cost: Decimal = Decimal("0"),
    ) -> None:
        self._tool_id = tool_id
        self._client = client
        self._model = model
        self._display_name = display_name
        self._instructions = instructions
        self._temperature = temperature
        self._flat_cost = flat_cost

    @property
    def tool_id(self) -> str:
        return self._tool_id

    @property
    def display_name(self) -> str:
        return self._display_name or self._tool_id

    @property
    def required_inputs(self) -> frozenset[str]:
        return frozenset({PROMPT_INPUT})

    @property
    def accepted_inputs(self) -> frozenset[str] | None:
        return frozenset({PROMPT_INPUT, INSTRUCTIONS_INPUT})

    @property
    def flat_cost(self) -> Decimal:
        return self._flat_cost

    def _messages(self, inputs: dict[str, Any]) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        instructions = inputs.get(INSTRUCTIONS_INPUT) or self._instructions
        if instructions:
            messages.append({"role": "system", "content": str(instructions)})
        messages.append({"role": "user", "content": str(inputs[PROMPT_INPUT])})
        return messages

    async def execute(self, inputs: dict[str, Any]) -> CompletionSignal:
        logger.debug("chat_tool_request", tool_id=self._tool_id, model=self._model)
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(inputs),
                **({"temperature": self._temperature} if self._temperature is not None else {}),
            )
        except _RETRYABLE as e:
            raise InvocationError(f"Chat call failed: {e}", retryable=True) from e
        except APIStatusError as e:
            raise InvocationError(f"Chat API error: {e.status_code} {e.message}") from e
        except OpenAIError as e:
            raise InvocationError(f"Chat call failed: {e}") from e

        if not response.choices:
            raise InvocationError(f"Empty choices from provider ({self._tool_id})")
        content = response.choices[0].message.content or ""
        logger.debug("chat_tool_response", tool_id=self._tool_id, chars=len(content))
        return CompletionSignal.success(
            normalize_output({"text": content}),
            raw_payload=response.model_dump(mode="json"),
            cost_delta=self._flat_cost,
        )
