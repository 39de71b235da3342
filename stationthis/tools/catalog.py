"""Tool catalog: JSON description of the tools the coordinator can invoke.

Example:

    {"tools": [
        {"toolId": "flux-dev", "kind": "comfydeploy", "deploymentId": "d-123",
         "requiredInputs": ["input_prompt"], "costPerSecond": "0.0011"},
        {"toolId": "chatgpt", "kind": "chat", "flatCost": "0.001"}
    ]}
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from stationthis.tools.chat import ChatCompletionTool
from stationthis.tools.comfydeploy import ComfyDeployTool
from stationthis.tools.registry import ToolRegistry

if TYPE_CHECKING:
    import httpx
    from openai import AsyncOpenAI

    from stationthis.config.settings import ComfyDeploySettings, OpenAISettings

logger = structlog.get_logger()


class _Entry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(alias="toolId")
    display_name: str = Field("", alias="displayName")


class ComfyDeployEntry(_Entry):
    kind: Literal["comfydeploy"] = "comfydeploy"
    deployment_id: str = Field(alias="deploymentId")
    required_inputs: list[str] = Field(default_factory=list, alias="requiredInputs")
    accepted_inputs: list[str] | None = Field(None, alias="acceptedInputs")
    cost_per_second: Decimal = Field(Decimal("0"), ge=0, alias="costPerSecond")


class ChatEntry(_Entry):
    kind: Literal["chat"] = "chat"
    model: str | None = None
    instructions: str = ""
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    flat_cost: Decimal = Field(Decimal("0"), ge=0, alias="flatCost")


CatalogEntry = Annotated[ComfyDeployEntry | ChatEntry, Field(discriminator="kind")]


class ToolCatalog(BaseModel):
    tools: list[CatalogEntry] = Field(default_factory=list)


def load_tool_catalog(path: Path) -> ToolCatalog:
    """Read and validate a catalog file. A missing file is an empty catalog."""
    if not path.exists():
        logger.warning("tool_catalog_missing", path=str(path))
        return ToolCatalog()
    return ToolCatalog.model_validate(json.loads(path.read_text(encoding="utf-8")))


def register_catalog(
    registry: ToolRegistry,
    catalog: ToolCatalog,
    *,
    http_client: httpx.AsyncClient,
    comfydeploy: ComfyDeploySettings,
    openai_client: AsyncOpenAI | None,
    openai_settings: OpenAISettings,
) -> None:
    """Instantiate catalog entries into the registry.

    Entries whose backend is not configured are skipped with a warning.
    """
    for entry in catalog.tools:
        if isinstance(entry, ComfyDeployEntry):
            if not comfydeploy.api_key:
                logger.warning("tool_skipped_backend_disabled", tool_id=entry.tool_id)
                continue
            registry.register(
                ComfyDeployTool(
                    tool_id=entry.tool_id,
                    deployment_id=entry.deployment_id,
                    client=http_client,
                    api_key=comfydeploy.api_key,
                    base_url=comfydeploy.base_url,
                    display_name=entry.display_name,
                    required_inputs=frozenset(entry.required_inputs),
                    accepted_inputs=(
                        frozenset(entry.accepted_inputs)
                        if entry.accepted_inputs is not None
                        else None
                    ),
                    cost_per_second=entry.cost_per_second,
                )
            )
        else:
            if openai_client is None:
                logger.warning("tool_skipped_backend_disabled", tool_id=entry.tool_id)
                continue
            registry.register(
                ChatCompletionTool(
                    tool_id=entry.tool_id,
                    client=openai_client,
                    model=entry.model or openai_settings.model,
                    display_name=entry.display_name,
                    instructions=entry.instructions,
                    temperature=entry.temperature,
                    flat_cost=entry.flat_cost,
                )
            )
