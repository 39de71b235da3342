"""Tests for the OpenAI-compatible immediate text tool."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, OpenAIError

from stationthis.infra.errors import InvocationError
from stationthis.pipeline.models import StepStatus
from stationthis.tools.chat import ChatCompletionTool


def _response(content: str | None) -> MagicMock:
    response = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    response.choices = [choice]
    response.model_dump.return_value = {"choices": [{"message": {"content": content}}]}
    return response


def _tool(create: AsyncMock, **kwargs) -> ChatCompletionTool:
    client = MagicMock()
    client.chat.completions.create = create
    return ChatCompletionTool(tool_id="chatgpt", client=client, model="gpt-4o-mini", **kwargs)


class TestExecute:
    async def test_returns_text_and_flat_cost(self) -> None:
        create = AsyncMock(return_value=_response("a red fox"))
        tool = _tool(create, flat_cost=Decimal("0.001"), instructions="Be brief.")

        signal = await tool.execute({"input_prompt": "describe a fox"})

        assert signal.status is StepStatus.success
        assert signal.output.text == "a red fox"
        assert signal.cost_delta == Decimal("0.001")
        messages = create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert messages[1] == {"role": "user", "content": "describe a fox"}
        assert "temperature" not in create.call_args.kwargs

    async def test_instructions_input_overrides_default(self) -> None:
        create = AsyncMock(return_value=_response("ok"))
        tool = _tool(create, instructions="default", temperature=0.2)
        await tool.execute({"input_prompt": "p", "input_instructions": "custom"})
        assert create.call_args.kwargs["messages"][0]["content"] == "custom"
        assert create.call_args.kwargs["temperature"] == 0.2

    async def test_connection_error_is_retryable(self) -> None:
        request = httpx.Request("POST", "https://api.test/v1/chat/completions")
        create = AsyncMock(side_effect=APIConnectionError(request=request))
        with pytest.raises(InvocationError) as exc_info:
            await _tool(create).execute({"input_prompt": "p"})
        assert exc_info.value.retryable

    async def test_status_error_is_not_retryable(self) -> None:
        request = httpx.Request("POST", "https://api.test/v1/chat/completions")
        response = httpx.Response(400, request=request)
        create = AsyncMock(
            side_effect=APIStatusError("bad request", response=response, body=None)
        )
        with pytest.raises(InvocationError) as exc_info:
            await _tool(create).execute({"input_prompt": "p"})
        assert not exc_info.value.retryable

    async def test_empty_choices(self) -> None:
        response = _response("x")
        response.choices = []
        with pytest.raises(InvocationError, match="Empty choices"):
            await _tool(AsyncMock(return_value=response)).execute({"input_prompt": "p"})

    async def test_other_sdk_errors_are_not_retryable(self) -> None:
        create = AsyncMock(side_effect=OpenAIError("malformed response"))
        with pytest.raises(InvocationError, match="malformed response") as exc_info:
            await _tool(create).execute({"input_prompt": "p"})
        assert not exc_info.value.retryable


def test_only_prompt_and_instructions_forwarded() -> None:
    tool = _tool(AsyncMock())
    assert tool.select_inputs({"input_prompt": "p", "input_image": "u"}) == {"input_prompt": "p"}
    assert tool.required_inputs == frozenset({"input_prompt"})
