"""Step Input Resolver: pure precedence merge of step inputs.

Merge order is an explicit ordered list of sources, folded left to right
(later sources win):

    pipeline_context  <  parameters  <  mappings  <  overrides

No implicit defaulting beyond these sources. A required tool input left
unresolved is a DefinitionError, never a runtime retry condition.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from stationthis.infra.errors import DefinitionError
from stationthis.pipeline.definitions import NodeOutputMapping, StaticMapping, StepDefinition

# Coordinator bookkeeping never forwarded to tools.
RESERVED_CONTEXT_KEYS = frozenset({"stepResultIds", "runId"})

MergeSource = tuple[str, dict[str, Any]]


def _resolve_mappings(
    step: StepDefinition, context: dict[str, Any], *, step_index: int
) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for input_name, mapping in step.input_mappings.items():
        if isinstance(mapping, StaticMapping):
            resolved[input_name] = mapping.value
        elif isinstance(mapping, NodeOutputMapping):
            if mapping.key not in context:
                raise DefinitionError(
                    f"Step {step_index} ({step.tool_id}): input '{input_name}' maps "
                    f"to '{mapping.key}', which no earlier step produced"
                )
            resolved[input_name] = context[mapping.key]
    return resolved


def merge_sources(
    context: dict[str, Any], step: StepDefinition, *, step_index: int = 0
) -> list[MergeSource]:
    """Return the ordered merge sources, lowest precedence first."""
    pipeline_context = {
        k: v for k, v in context.items() if k not in RESERVED_CONTEXT_KEYS
    }
    return [
        ("pipeline_context", pipeline_context),
        ("parameters", dict(step.parameters)),
        ("mappings", _resolve_mappings(step, context, step_index=step_index)),
        ("overrides", dict(step.parameter_overrides)),
    ]


def resolve_step_inputs(
    context: dict[str, Any],
    step: StepDefinition,
    required_inputs: Iterable[str] = (),
    *,
    step_index: int = 0,
) -> dict[str, Any]:
    """Produce the final input set for invoking the step's tool.

    Raises DefinitionError if a required input is absent after the merge.
    """
    inputs: dict[str, Any] = {}
    for _name, source in merge_sources(context, step, step_index=step_index):
        inputs.update(source)

    missing = sorted(k for k in required_inputs if k not in inputs)
    if missing:
        raise DefinitionError(
            f"Step {step_index} ({step.tool_id}) is missing required inputs: "
            f"{', '.join(missing)}"
        )
    return inputs
