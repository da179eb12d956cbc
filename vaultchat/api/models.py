"""Shared data models for the API layer.

Content blocks are a closed union of three dataclasses. Every consumer
checks all three and raises on anything else, so adding a block type
means touching each consumption site.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Parse a wire-format content block.

    Raises ValueError for block types outside the closed union.
    """
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "tool_use":
        return ToolUseBlock(
            id=data["id"],
            name=data["name"],
            input=dict(data.get("input") or {}),
        )
    if block_type == "tool_result":
        content = data.get("content", "")
        if isinstance(content, list):
            # Result content may itself be a list of text blocks
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unsupported content block type: {block_type!r}")


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Serialize a content block to the Messages API shape."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        data: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
        }
        if block.is_error:
            data["is_error"] = True
        return data
    raise TypeError(f"Unknown content block: {block!r}")


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: str | list[ContentBlock]

    @property
    def blocks(self) -> list[ContentBlock]:
        """Content as a block list (plain strings become one TextBlock)."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)

    @property
    def has_structured_content(self) -> bool:
        """True if the message carries tool_use or tool_result blocks."""
        if isinstance(self.content, str):
            return False
        return any(not isinstance(b, TextBlock) for b in self.content)

    def text(self) -> str:
        """Joined text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block_to_dict(b) for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {role!r}")
        content = data.get("content", "")
        if isinstance(content, str):
            return cls(role=role, content=content)
        return cls(role=role, content=[block_from_dict(b) for b in content])


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Conversation:
    """A named, persisted conversation."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    messages: list[Message] = field(default_factory=list)
    summary: str = ""

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def first_user_text(self) -> str:
        for msg in self.messages:
            if msg.role == "user" and not msg.has_structured_content:
                return msg.text()
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            summary=data.get("summary", ""),
        )


@dataclass
class ConversationMeta:
    """Listing entry for a stored conversation."""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "message_count": self.message_count,
        }


@dataclass
class ModelResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[ContentBlock]
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelResponse:
        return cls(
            content=[block_from_dict(b) for b in data.get("content", [])],
            stop_reason=data.get("stop_reason") or "",
            usage=data.get("usage"),
        )

    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass(frozen=True)
class ToolSpec:
    """Static tool definition sent with every request."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Ascending backoff delays (seconds), consumed one per failed attempt."""

    delays: tuple[float, ...] = (1.0, 2.0, 4.0)

    @property
    def max_retries(self) -> int:
        return len(self.delays)

    def delay_for(self, retry: int) -> float | None:
        """Delay before the given 1-based retry, or None once exhausted."""
        if 1 <= retry <= len(self.delays):
            return self.delays[retry - 1]
        return None
