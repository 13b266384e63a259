"""
Tool System - the dispatcher boundary.

The agent loop never interprets tool arguments. It hands the raw
argument text to a ToolDispatcher and appends whatever string comes back
as a tool message. Argument parsing, validation and recovery from
malformed model output all happen on this side of the boundary, and
every failure becomes an "error: ..." string the model can read and
correct, never an exception.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ToolDispatcher(Protocol):
    """What the agent loop needs to run a tool call."""

    def execute(
        self,
        name: str,
        arguments: str,
        user_id: str,
        assistant_text: str | None = None,
    ) -> str: ...

    def get_schemas(self) -> list[dict[str, Any]]: ...


class ToolHandler(Protocol):
    """Protocol for tool handler functions."""
    def __call__(self, **kwargs: Any) -> str: ...


@dataclass
class Tool:
    """
    Definition of a tool that the model can call.

    A tool has:
    - name: Unique identifier
    - description: What the tool does (shown to the model)
    - parameters: JSON Schema for the tool's parameters
    - handler: Function that executes the tool

    Handlers that declare a user_id keyword receive the calling user's id.
    """
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    wants_user_id: bool = False

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        required = self.parameters.get("required", [])
        return [key for key in required if key not in arguments]


_KEY_VALUE = re.compile(r'"?(\w+)"?\s*[:=]\s*"([^"]*)"')


def recover_arguments(text: str) -> dict[str, Any] | None:
    """
    Best-effort recovery of key/value pairs from broken JSON.

    Models sometimes emit truncated or single-quoted argument objects.
    Returns None when nothing recognisable can be salvaged.
    """
    stripped = text.strip()
    if not stripped:
        return {}
    pairs = dict(_KEY_VALUE.findall(stripped))
    return pairs or None


@dataclass
class ToolRegistry:
    """
    Registry of available tools; the default ToolDispatcher.

    Only tools registered here can be called.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        wants_user_id: bool = False,
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
            wants_user_id=wants_user_id,
        )
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def execute(
        self,
        name: str,
        arguments: str,
        user_id: str,
        assistant_text: str | None = None,
    ) -> str:
        """
        Run one tool call and return its result text.

        This is the controlled entry point for all side effects.
        """
        tool = self._tools.get(name)
        if tool is None:
            available = ", ".join(self._tools) or "none"
            return f'error: unknown tool "{name}". available: {available}'

        try:
            parsed = json.loads(arguments) if arguments and arguments.strip() else {}
        except json.JSONDecodeError:
            parsed = recover_arguments(arguments)
            if parsed is None:
                logger.warning(f"Unrecoverable arguments for {name}: {arguments[:200]}")
                return f"error: invalid json arguments for {name}"
            logger.info(f"Recovered malformed arguments for {name}")

        if not isinstance(parsed, dict):
            return f"error: arguments for {name} must be a JSON object"

        missing = tool.missing_arguments(parsed)
        if missing:
            return f"error: missing required argument(s) for {name}: {', '.join(missing)}"

        if tool.wants_user_id:
            parsed["user_id"] = user_id

        logger.info(f"Executing tool: {name}")
        try:
            return str(tool.handler(**parsed))
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return f"error: {e}"

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
