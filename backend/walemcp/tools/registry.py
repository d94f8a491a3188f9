from __future__ import annotations

import logging
from typing import Dict, Optional

from walemcp.models import PlannedStep
from walemcp.tools.base import BaseTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Read-mostly after startup: registration happens while the service is built."""

    def __init__(self) -> None:
        self._tools: Dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if not tool.id:
            raise ValueError("Tool id is required")
        if tool.id in self._tools:
            logger.warning("Tool with ID %s already exists. Overwriting.", tool.id)
        self._tools[tool.id] = tool
        logger.debug("Registered tool: %s (%s)", tool.id, tool.type.value)

    def find_for_step(self, step: PlannedStep) -> Optional[BaseTool]:
        tool = self._tools.get(step.tool_id)
        if tool is not None:
            return tool
        # A step may name a tool category instead of a concrete tool.
        for candidate in self._tools.values():
            if candidate.type.value == step.tool_id:
                return candidate
        return None

    def __len__(self) -> int:
        return len(self._tools)
