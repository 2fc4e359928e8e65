"""
Tool Registry - maps tool names to schemas and handlers.

Tools are registered once at startup. Handlers are coroutines taking the
server context and the call arguments and returning a JSON-serializable dict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mcp.types import Tool

from .errors import UnknownToolError

logger = logging.getLogger(__name__)

Handler = Callable[[Any, dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolDescriptor:
    """A registered tool: its catalog entry plus the handler."""
    tool: Tool
    handler: Handler

    @property
    def name(self) -> str:
        return self.tool.name


class ToolRegistry:
    """Name -> ToolDescriptor table, in registration order."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}

    def register(self, name: str, description: str, input_schema: dict[str, Any],
                 handler: Handler) -> ToolDescriptor:
        """
        Register a tool.

        Raises:
            ValueError: If the name is already registered
        """
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        descriptor = ToolDescriptor(
            tool=Tool(name=name, description=description, inputSchema=input_schema),
            handler=handler,
        )
        self._tools[name] = descriptor
        logger.debug(f"Registered tool: {name}")
        return descriptor

    def list(self) -> list[Tool]:
        return [d.tool for d in self._tools.values()]

    def catalog(self) -> list[dict[str, Any]]:
        """Catalog entries ({name, description, inputSchema}) for tools/list."""
        return [tool.model_dump(by_alias=True, exclude_none=True) for tool in self.list()]

    def get(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"Unknown tool: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def invoke(self, name: str, arguments: dict[str, Any], context: Any) -> dict[str, Any]:
        """
        Call a tool by name.

        Raises:
            UnknownToolError: If the tool is not registered
            Exception: Whatever the handler raises
        """
        descriptor = self.get(name)
        return await descriptor.handler(context, arguments)
