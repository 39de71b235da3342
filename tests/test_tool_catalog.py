"""Tests for ToolRegistry and the JSON tool catalog."""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest
from pydantic import ValidationError

from stationthis.config.settings import ComfyDeploySettings, OpenAISettings
from stationthis.infra.errors import DefinitionError
from stationthis.pipeline.models import DeliveryMode
from stationthis.tools.catalog import load_tool_catalog, register_catalog
from stationthis.tools.chat import ChatCompletionTool
from stationthis.tools.comfydeploy import ComfyDeployTool
from stationthis.tools.registry import ToolRegistry
from tests.fakes import FakeImmediateTool, FakeWebhookTool

CATALOG = {
    "tools": [
        {
            "toolId": "flux-dev",
            "kind": "comfydeploy",
            "deploymentId": "d-123",
            "requiredInputs": ["input_prompt"],
            "costPerSecond": "0.0011",
        },
        {"toolId": "chatgpt", "kind": "chat", "flatCost": "0.001", "model": "gpt-4o"},
    ]
}


class TestToolRegistry:
    def test_register_and_lookup(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeImmediateTool("chat"))
        registry.register(FakeWebhookTool("flux"))
        assert registry.get("chat").tool_id == "chat"
        assert registry.get("nope") is None
        assert [t.tool_id for t in registry.list_tools(DeliveryMode.webhook)] == ["flux"]
        assert registry.tool_ids() == ["chat", "flux"]

    def test_duplicate_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register(FakeImmediateTool("chat"))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(FakeImmediateTool("chat"))

    def test_require_unknown_is_definition_error(self) -> None:
        with pytest.raises(DefinitionError):
            ToolRegistry().require("ghost")


class TestCatalog:
    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "tools.json"
        path.write_text(json.dumps(CATALOG), encoding="utf-8")
        catalog = load_tool_catalog(path)
        flux, chat = catalog.tools
        assert flux.deployment_id == "d-123"
        assert flux.cost_per_second == Decimal("0.0011")
        assert chat.flat_cost == Decimal("0.001")

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert load_tool_catalog(tmp_path / "absent.json").tools == []

    def test_negative_rate_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "tools.json"
        path.write_text(json.dumps({"tools": [{
            "toolId": "x", "kind": "comfydeploy", "deploymentId": "d", "costPerSecond": -1,
        }]}), encoding="utf-8")
        with pytest.raises(ValidationError):
            load_tool_catalog(path)

    async def test_register_all_backends(self, tmp_path: Path) -> None:
        path = tmp_path / "tools.json"
        path.write_text(json.dumps(CATALOG), encoding="utf-8")
        registry = ToolRegistry()
        async with httpx.AsyncClient() as http_client:
            register_catalog(
                registry,
                load_tool_catalog(path),
                http_client=http_client,
                comfydeploy=ComfyDeploySettings(api_key="k"),
                openai_client=MagicMock(),
                openai_settings=OpenAISettings(),
            )
        assert isinstance(registry.get("flux-dev"), ComfyDeployTool)
        assert registry.get("flux-dev").required_inputs == frozenset({"input_prompt"})
        assert isinstance(registry.get("chatgpt"), ChatCompletionTool)

    async def test_disabled_backends_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "tools.json"
        path.write_text(json.dumps(CATALOG), encoding="utf-8")
        registry = ToolRegistry()
        async with httpx.AsyncClient() as http_client:
            register_catalog(
                registry,
                load_tool_catalog(path),
                http_client=http_client,
                comfydeploy=ComfyDeploySettings(api_key=""),
                openai_client=None,
                openai_settings=OpenAISettings(),
            )
        assert registry.tool_ids() == []
