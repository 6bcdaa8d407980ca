from __future__ import annotations as _annotations

from collections.abc import Callable, Sequence
from typing import Any

import pydantic_core
from pydantic import BaseModel

import mcplink.types as types
from mcplink.server.tools.base import Tool
from mcplink.shared.exceptions import ToolError, ToolNotFoundError
from mcplink.utilities.logging import get_logger

logger = get_logger(__name__)


class ToolManager:
    """Manages mcplink tools.

    ``on_list_changed`` is called after every add or remove that changed the
    catalog.
    """

    def __init__(
        self,
        warn_on_duplicate_tools: bool = True,
        *,
        tools: list[Tool] | None = None,
        on_list_changed: Callable[[], None] | None = None,
    ):
        self._tools: dict[str, Tool] = {}
        self.warn_on_duplicate_tools = warn_on_duplicate_tools
        self.on_list_changed = on_list_changed
        for tool in tools or []:
            self.register(tool)

    def get_tool(self, name: str) -> Tool | None:
        """Get tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        """List all registered tools, in registration order."""
        return list(self._tools.values())

    def add_tool(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        title: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> Tool:
        """Add a tool to the server."""
        tool = Tool.from_function(fn, name=name, title=title, description=description, input_schema=input_schema)
        return self.register(tool)

    def register(self, tool: Tool) -> Tool:
        """Register a prepared tool. An existing tool with the same name wins."""
        existing = self._tools.get(tool.name)
        if existing:
            if self.warn_on_duplicate_tools:
                logger.warning(f"Tool already exists: {tool.name}")
            return existing
        self._tools[tool.name] = tool
        logger.debug("Added tool %s", tool.name)
        self._changed()
        return tool

    def remove_tool(self, name: str) -> bool:
        """Remove a tool. Returns False if there was no tool of that name."""
        if self._tools.pop(name, None) is None:
            return False
        logger.debug("Removed tool %s", name)
        self._changed()
        return True

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        """Call a tool by name with arguments.

        Raises:
            ToolNotFoundError: no tool of that name.
            InvalidParamsError: the arguments do not match the input schema.

        A tool that raises is reported as a result with ``isError`` set.
        """
        tool = self.get_tool(name)
        if not tool:
            raise ToolNotFoundError(name)

        try:
            result = await tool.run(arguments)
        except ToolError as e:
            logger.info("Tool %s failed: %s", name, e)
            return types.CallToolResult(
                content=[types.TextContent(text=str(e))],
                structuredContent=e.detail,
                isError=True,
            )
        return convert_result(result)

    def _changed(self) -> None:
        if self.on_list_changed is not None:
            self.on_list_changed()


def convert_result(result: Any) -> types.CallToolResult:
    """Turn whatever a tool function returned into a CallToolResult."""
    if isinstance(result, types.CallToolResult):
        return result
    if isinstance(result, BaseModel) and not isinstance(
        result, types.TextContent | types.ImageContent | types.EmbeddedResource
    ):
        result = result.model_dump(mode="json", by_alias=True)
    if isinstance(result, dict):
        return types.CallToolResult(
            content=[types.TextContent(text=pydantic_core.to_json(result, fallback=str, indent=2).decode())],
            structuredContent=result,
        )
    return types.CallToolResult(content=_convert_to_content(result))


def _convert_to_content(result: Any) -> list[types.ContentBlock]:
    if result is None:
        return []

    if isinstance(result, types.TextContent | types.ImageContent | types.EmbeddedResource):
        return [result]

    if isinstance(result, str):
        return [types.TextContent(text=result)]

    if isinstance(result, Sequence) and not isinstance(result, bytes | bytearray):
        content: list[types.ContentBlock] = []
        for item in result:  # type: ignore[reportUnknownVariableType]
            content.extend(_convert_to_content(item))
        return content

    return [types.TextContent(text=pydantic_core.to_json(result, fallback=str, indent=2).decode())]
