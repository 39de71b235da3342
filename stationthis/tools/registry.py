from __future__ import annotations

import structlog

from stationthis.infra.errors import DefinitionError
from stationthis.pipeline.models import DeliveryMode
from stationthis.tools.base import BaseTool

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for execution engine tools, keyed by tool_id."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool. Raises ValueError if tool_id already registered."""
        if tool.tool_id in self._tools:
            raise ValueError(f"Tool already registered: {tool.tool_id}")
        self._tools[tool.tool_id] = tool
        logger.info(
            "tool_registered",
            tool_id=tool.tool_id,
            delivery_mode=tool.delivery_mode.value,
        )

    def get(self, tool_id: str) -> BaseTool | None:
        """Get a tool by id. Returns None if not found."""
        return self._tools.get(tool_id)

    def require(self, tool_id: str) -> BaseTool:
        """Get a tool referenced by a step definition. Unknown ids are authoring defects."""
        tool = self._tools.get(tool_id)
        if tool is None:
            raise DefinitionError(f"Unknown tool: {tool_id}")
        return tool

    def list_tools(self, mode: DeliveryMode | None = None) -> list[BaseTool]:
        """Return registered tools, optionally filtered by delivery mode."""
        return [
            tool for tool in self._tools.values()
            if mode is None or tool.delivery_mode is mode
        ]

    def tool_ids(self) -> list[str]:
        return list(self._tools.keys())
