"""Observer port for turn progress notifications.

The agent loop reports progress (thinking, retry countdowns, tool
execution, summarization) through a TurnObserver. Notifications are
fire-and-forget: observer errors are logged and never reach the loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass
class ToolCallRecord:
    """One executed tool call, as reported to the caller."""

    name: str
    input: dict[str, Any]
    result: str
    is_error: bool = False
    duration_ms: int = 0

    def preview(self, limit: int = 200) -> str:
        if len(self.result) > limit:
            return self.result[:limit] + "..."
        return self.result


class TurnObserver(Protocol):
    def on_status(self, status: str, detail: str = "") -> None: ...

    def on_retry(self, attempt: int, delay: float) -> None: ...

    def on_tool_start(self, name: str, input: dict[str, Any]) -> None: ...

    def on_tool_end(self, record: ToolCallRecord) -> None: ...

    def on_summarized(self, message_count: int, summary: str) -> None: ...


class NullObserver:
    """Observer that ignores everything."""

    def on_status(self, status: str, detail: str = "") -> None:
        pass

    def on_retry(self, attempt: int, delay: float) -> None:
        pass

    def on_tool_start(self, name: str, input: dict[str, Any]) -> None:
        pass

    def on_tool_end(self, record: ToolCallRecord) -> None:
        pass

    def on_summarized(self, message_count: int, summary: str) -> None:
        pass


class SafeObserver:
    """Wraps an observer so its failures are logged, not raised."""

    def __init__(self, inner: TurnObserver | None) -> None:
        self._inner = inner or NullObserver()

    def _call(self, method: str, *args: Any) -> None:
        try:
            getattr(self._inner, method)(*args)
        except Exception:
            logger.exception("Observer %s.%s failed", type(self._inner).__name__, method)

    def on_status(self, status: str, detail: str = "") -> None:
        self._call("on_status", status, detail)

    def on_retry(self, attempt: int, delay: float) -> None:
        self._call("on_retry", attempt, delay)

    def on_tool_start(self, name: str, input: dict[str, Any]) -> None:
        self._call("on_tool_start", name, input)

    def on_tool_end(self, record: ToolCallRecord) -> None:
        self._call("on_tool_end", record)

    def on_summarized(self, message_count: int, summary: str) -> None:
        self._call("on_summarized", message_count, summary)
