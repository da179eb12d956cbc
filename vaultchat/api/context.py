"""Context management: token estimation, pruning, truncation, summaries.

Three layers, applied to a copy of the working history before every
request:
  1. Smart pruning: drop low-value acknowledgments outside the recent window
  2. Hard cap: trim (or split off for summarization) beyond the message cap
  3. Content truncation: shorten old tool results and long assistant text

Cuts never separate a tool_use from its tool_result. Nothing here makes
network calls except ModelSummarizer, which falls back to the local
digest when the model is unavailable.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from vaultchat.api.client import RequestClient
from vaultchat.api.errors import ApiError, ConfigurationError
from vaultchat.api.models import (
    ContentBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from vaultchat.config import Settings

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
SUMMARY_DELIMITER = "--- end of summary ---"

_TOOL_RESULT_MARKER = "[... truncated {length} chars to save tokens ...]"
_TEXT_MARKER = "[... previous response truncated ({length} chars) ...]"
_MARKER_RE = re.compile(
    r"\[\.\.\. (?:truncated \d+ chars to save tokens"
    r"|previous response truncated \(\d+ chars\)) \.\.\.\]$"
)

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a condensed summary of the
conversation you are given, in plain prose or short bullet points.
Keep: the user's goals, decisions made, files read or changed (exact paths),
and any open questions. Drop pleasantries and tool output details.
TARGET LENGTH: under 300 words."""


@dataclass
class TruncationResult:
    """Outcome of ContextManager.truncate()."""

    messages: list[Message]
    to_summarize: list[Message] = field(default_factory=list)

    @property
    def needs_summary(self) -> bool:
        return bool(self.to_summarize)


def _block_chars(block: ContentBlock) -> int:
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(json.dumps(block.input, sort_keys=True, ensure_ascii=False))
    if isinstance(block, ToolResultBlock):
        return len(block.content)
    raise TypeError(f"Unknown content block: {block!r}")


def _is_marked(text: str) -> bool:
    return bool(_MARKER_RE.search(text))


class ContextManager:
    """Keeps the outgoing history inside the configured budget."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._low_value = {p.strip().lower() for p in settings.low_value_phrases}

    # ------------------------------------------------------------------
    # Token estimation
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_tokens(content: str | Sequence[ContentBlock]) -> int:
        """chars/4 over text, tool-result content and serialized tool input."""
        if isinstance(content, str):
            chars = len(content)
        else:
            chars = sum(_block_chars(b) for b in content)
        return math.ceil(chars / CHARS_PER_TOKEN)

    def estimate_history_tokens(self, messages: Sequence[Message]) -> int:
        return sum(self.estimate_tokens(m.content) for m in messages)

    def usage_ratio(self, messages: Sequence[Message], system_prompt: str = "") -> float:
        """Estimated share of the context window the request would use."""
        total = self.estimate_history_tokens(messages) + self.estimate_tokens(system_prompt)
        return total / self._settings.context_window_tokens

    # ------------------------------------------------------------------
    # Layer 1: smart pruning
    # ------------------------------------------------------------------

    def is_low_value(self, message: Message) -> bool:
        """Short acknowledgment-only text. Structured content never qualifies."""
        if message.has_structured_content:
            return False
        text = message.text().strip()
        if len(text) < self._settings.min_message_chars:
            return True
        return text.lower().rstrip(".!?, ") in self._low_value

    def prune_low_value(self, history: Sequence[Message]) -> list[Message]:
        """Drop low-value messages outside the last prune_window messages."""
        protected_from = len(history) - self._settings.prune_window
        return [
            msg
            for i, msg in enumerate(history)
            if i >= protected_from or not self.is_low_value(msg)
        ]

    # ------------------------------------------------------------------
    # Layer 2: hard cap
    # ------------------------------------------------------------------

    @staticmethod
    def pair_safe_cut(history: Sequence[Message], cut: int) -> int:
        """Move a cut index earlier until no kept tool_result loses its tool_use."""
        cut = max(0, min(cut, len(history)))
        while cut > 0:
            kept_results = {r.tool_use_id for m in history[cut:] for r in m.tool_results()}
            dropped_uses = {u.id for m in history[:cut] for u in m.tool_uses()}
            if not kept_results & dropped_uses:
                break
            cut -= 1
        return cut

    # ------------------------------------------------------------------
    # Layer 3: content truncation
    # ------------------------------------------------------------------

    def _truncate_block(self, block: ContentBlock, role: str) -> ContentBlock:
        if isinstance(block, ToolResultBlock):
            limit = self._settings.max_tool_result_chars
            if len(block.content) > limit and not _is_marked(block.content):
                marker = _TOOL_RESULT_MARKER.format(length=len(block.content))
                return replace(block, content=f"{block.content[:limit]}\n\n{marker}")
            return block
        if isinstance(block, TextBlock):
            limit = self._settings.max_text_chars
            if role == "assistant" and len(block.text) > limit and not _is_marked(block.text):
                marker = _TEXT_MARKER.format(length=len(block.text))
                return replace(block, text=f"{block.text[:limit]}\n\n{marker}")
            return block
        if isinstance(block, ToolUseBlock):
            return block
        raise TypeError(f"Unknown content block: {block!r}")

    def truncate_message(self, message: Message) -> Message:
        """Shorten oversized tool results and long assistant text."""
        if isinstance(message.content, str):
            truncated = self._truncate_block(TextBlock(text=message.content), message.role)
            assert isinstance(truncated, TextBlock)
            if truncated.text == message.content:
                return message
            return Message(role=message.role, content=truncated.text)
        blocks = [self._truncate_block(b, message.role) for b in message.content]
        if blocks == list(message.content):
            return message
        return Message(role=message.role, content=blocks)

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def truncate(
        self,
        history: Sequence[Message],
        system_prompt: str = "",
        allow_summary: bool = True,
    ) -> TruncationResult:
        """Produce a bounded copy of history. The input is not mutated.

        If the hard cap is exceeded while usage is above the auto-summarize
        threshold, the older messages are returned in to_summarize and only
        the recent window is kept; the caller folds them into the summary.
        """
        settings = self._settings
        messages = self.prune_low_value(history)
        to_summarize: list[Message] = []

        if len(messages) > settings.max_history_messages:
            ratio = self.usage_ratio(messages, system_prompt)
            if (
                allow_summary
                and settings.summarization_enabled
                and ratio >= settings.auto_summarize_threshold
            ):
                cut = self.pair_safe_cut(messages, len(messages) - settings.summary_keep_recent)
                to_summarize = messages[:cut]
                logger.info(
                    "Context at %.0f%% of window: summarizing %d messages, keeping %d",
                    ratio * 100, len(to_summarize), len(messages) - cut,
                )
            else:
                cut = self.pair_safe_cut(messages, len(messages) - settings.max_history_messages)
                logger.debug("Trimmed history from %d to %d messages", len(messages), len(messages) - cut)
            messages = messages[cut:]

        preserve_from = len(messages) - settings.preserve_recent
        messages = [
            msg if i >= preserve_from else self.truncate_message(msg)
            for i, msg in enumerate(messages)
        ]
        return TruncationResult(messages=messages, to_summarize=to_summarize)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def summarize(self, messages: Sequence[Message]) -> str:
        """Local digest: role label, trimmed text and tool names per message."""
        limit = self._settings.summary_snippet_chars
        lines: list[str] = []
        for msg in messages:
            label = "User" if msg.role == "user" else "Assistant"
            text = " ".join(msg.text().split())
            if len(text) > limit:
                text = text[:limit] + "..."
            line = f"{label}: {text}" if text else f"{label}:"
            tool_names = [u.name for u in msg.tool_uses()]
            if tool_names:
                line += f" [tools: {', '.join(tool_names)}]"
            results = msg.tool_results()
            if results:
                line += f" [tool results: {len(results)}]"
            lines.append(line)
        lines.append(SUMMARY_DELIMITER)
        return "\n".join(lines)

    @staticmethod
    def merge_summary(existing: str, new: str) -> str:
        if not existing:
            return new
        if not new:
            return existing
        return f"{existing}\n\n{new}"

    @staticmethod
    def system_prompt_with_summary(system_prompt: str, summary: str) -> str:
        """Prefix the rolling summary to the system prompt."""
        if not summary:
            return system_prompt
        return f"## Summary of earlier conversation\n\n{summary}\n\n{system_prompt}"


class ModelSummarizer:
    """Model-backed summaries with the local digest as fallback."""

    def __init__(self, client: RequestClient, context: ContextManager, settings: Settings) -> None:
        self._client = client
        self._context = context
        self._settings = settings

    async def summarize(self, messages: Sequence[Message]) -> str:
        if not messages:
            return ""
        try:
            text = await self._client.complete(
                self.serialize_for_summary(messages),
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                model=self._settings.summary_model,
                max_tokens=self._settings.summary_max_tokens,
            )
        except (ApiError, ConfigurationError) as e:
            logger.warning("Model summary failed: %s - using local digest", e)
            return self._context.summarize(messages)

        text = text.strip()
        if not text:
            logger.warning("Model returned an empty summary - using local digest")
            return self._context.summarize(messages)
        return f"{text}\n{SUMMARY_DELIMITER}"

    @staticmethod
    def serialize_for_summary(messages: Sequence[Message]) -> str:
        """Serialize messages as readable text for summarization."""
        lines = []
        for msg in messages:
            role = "User" if msg.role == "user" else "Assistant"
            parts: list[str] = []
            for block in msg.blocks:
                if isinstance(block, TextBlock):
                    parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    parts.append(f"(called {block.name} with {json.dumps(block.input, ensure_ascii=False)})")
                elif isinstance(block, ToolResultBlock):
                    parts.append(f"(tool result: {block.content[:500]})")
                else:
                    raise TypeError(f"Unknown content block: {block!r}")
            lines.append(f"**{role}:** {chr(10).join(parts)}")
        return "\n\n".join(lines)
