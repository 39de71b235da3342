from __future__ import annotations

from stationthis.pipeline.definitions import SpellDefinition
from stationthis.pipeline.validation import validate_spell
from stationthis.tools.registry import ToolRegistry
from tests.fakes import FakeImmediateTool, FakeWebhookTool


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(FakeImmediateTool("chat", required=frozenset({"input_prompt"})))
    registry.register(FakeWebhookTool("flux", required=frozenset({"input_prompt"})))
    return registry


def _spell(*steps: dict) -> SpellDefinition:
    return SpellDefinition.model_validate({"slug": "s", "steps": list(steps)})


def test_clean_spell() -> None:
    spell = _spell({"toolId": "chat"}, {"toolId": "flux"})
    assert validate_spell(spell, _registry(), initial_inputs={"input_prompt"}) == []


def test_unknown_tool_reported() -> None:
    issues = validate_spell(_spell({"toolId": "chat"}, {"toolId": "ghost"}), _registry())
    assert [(i.step_index, i.message) for i in issues] == [(1, "unknown tool")]


def test_first_step_missing_required_input() -> None:
    issues = validate_spell(_spell({"toolId": "chat"}), _registry(), initial_inputs=set())
    assert len(issues) == 1
    assert "input_prompt" in str(issues[0])


def test_first_step_node_output_to_absent_key() -> None:
    spell = _spell({
        "toolId": "chat",
        "inputMappings": {"input_prompt": {"type": "nodeOutput", "key": "text"}},
    })
    issues = validate_spell(spell, _registry(), initial_inputs=set())
    assert "'text'" in issues[0].message


def test_static_sources_satisfy_requirements() -> None:
    spell = _spell({"toolId": "chat", "parameters": {"input_prompt": "hello"}})
    assert validate_spell(spell, _registry(), initial_inputs=set()) == []


def test_later_steps_not_checked_for_inputs() -> None:
    spell = _spell({"toolId": "chat", "parameters": {"input_prompt": "x"}}, {"toolId": "flux"})
    assert validate_spell(spell, _registry(), initial_inputs=set()) == []
