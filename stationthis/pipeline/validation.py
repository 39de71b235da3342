"""Static lint of spell definitions before they are stored or cast."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from stationthis.pipeline.definitions import NodeOutputMapping, SpellDefinition
from stationthis.tools.registry import ToolRegistry


@dataclass(frozen=True)
class SpellIssue:
    step_index: int
    tool_id: str
    message: str

    def __str__(self) -> str:
        return f"step {self.step_index} ({self.tool_id}): {self.message}"


def validate_spell(
    spell: SpellDefinition,
    registry: ToolRegistry,
    *,
    initial_inputs: Iterable[str] | None = None,
) -> list[SpellIssue]:
    """Report authoring defects detectable without running the spell.

    Unknown tools are always reported. Step 0's context is known only when
    initial_inputs is given; later steps also receive upstream outputs,
    whose keys are not known statically, so only step 0 is checked for
    unsatisfiable inputs.
    """
    issues: list[SpellIssue] = []
    for index, step in enumerate(spell.steps):
        tool = registry.get(step.tool_id)
        if tool is None:
            issues.append(SpellIssue(index, step.tool_id, "unknown tool"))
            continue
        if index != 0 or initial_inputs is None:
            continue

        context_keys = set(initial_inputs)
        for input_name, mapping in step.input_mappings.items():
            if isinstance(mapping, NodeOutputMapping) and mapping.key not in context_keys:
                issues.append(
                    SpellIssue(
                        index,
                        step.tool_id,
                        f"input '{input_name}' maps to '{mapping.key}', "
                        "which is not among the initial inputs",
                    )
                )
        available = (
            context_keys
            | set(step.parameters)
            | set(step.input_mappings)
            | set(step.parameter_overrides)
        )
        missing = sorted(tool.required_inputs - available)
        if missing:
            issues.append(
                SpellIssue(
                    index,
                    step.tool_id,
                    f"required inputs never provided: {', '.join(missing)}",
                )
            )
    return issues
