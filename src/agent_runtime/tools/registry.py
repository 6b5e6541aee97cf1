"""
Tool registry for managing available tool handlers.
"""

from typing import Any

import structlog

from ..llm.base import ToolDefinition
from .base import Tool, ToolHandler

logger = structlog.get_logger()


class ToolRegistry:
    """Registry mapping tool names to handlers and schemas."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def register_function(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        schema: dict[str, Any] | None = None,
    ) -> Tool:
        """Register a bare async function under ``name``."""
        tool = Tool(
            name=name,
            description=description,
            handler=handler,
            schema=schema or {"type": "object", "properties": {}},
        )
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the model."""
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description,
                parameters=tool.get_parameters_schema(),
            )
            for tool in self._tools.values()
        ]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
