"""Spell and step definitions (authoring documents loaded from the spells table or API)."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StaticMapping(BaseModel):
    """Literal value wired into a tool input."""

    type: Literal["static"] = "static"
    value: Any


class NodeOutputMapping(BaseModel):
    """Reference to a key already present in the pipeline context."""

    type: Literal["nodeOutput"] = "nodeOutput"
    key: str


InputMapping = Annotated[StaticMapping | NodeOutputMapping, Field(discriminator="type")]


class StepDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(alias="toolId")
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_mappings: dict[str, InputMapping] = Field(
        default_factory=dict, alias="inputMappings"
    )
    # output_key -> next step input_key
    output_mappings: dict[str, str] = Field(default_factory=dict, alias="outputMappings")
    # Legacy one-off overrides; win over everything else
    parameter_overrides: dict[str, Any] = Field(
        default_factory=dict, alias="parameterOverrides"
    )


class SpellDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slug: str
    name: str = ""
    steps: list[StepDefinition] = Field(min_length=1)

    @property
    def display_name(self) -> str:
        return self.name or self.slug
