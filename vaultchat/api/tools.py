"""Tool executor contract and dispatcher.

The agent loop only sees ToolExecutor: execute(name, input) -> str.
Business failures (missing file, bad path) come back as descriptive
strings. Unexpected handler failures are raised as ToolExecutionError,
which the loop converts into an error tool_result.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from vaultchat.api.errors import ToolExecutionError
from vaultchat.api.models import ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[str]]


class ToolExecutor(Protocol):
    """Narrow contract the agent loop executes tools through."""

    async def execute(self, name: str, input: dict[str, Any]) -> str: ...


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the model.

    Each handler is an async callable taking the tool input as keyword
    arguments and returning the result string.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._specs: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        """Register a tool handler with its spec."""
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._handlers[spec.name] = handler
        self._specs[spec.name] = spec

    def has_tool(self, name: str) -> bool:
        return name in self._handlers

    async def execute(self, name: str, input: dict[str, Any]) -> str:
        """Dispatch a tool call and return its result text."""
        handler = self._handlers.get(name)
        if handler is None:
            return f"Error: Unknown tool: {name}"
        try:
            return await handler(**input)
        except TypeError as e:
            # Missing or unexpected arguments from the model
            return f"Error: Invalid input for {name}: {e}"
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            raise ToolExecutionError(name, e) from e

    def tool_specs(self) -> list[ToolSpec]:
        """Return all tool specs in registration order."""
        return list(self._specs.values())
