"""Tests for content blocks, messages and conversation serialization."""

from datetime import UTC, datetime

import pytest

from vaultchat.api.models import (
    Conversation,
    Message,
    ModelResponse,
    RetryPolicy,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    block_from_dict,
    block_to_dict,
)


class TestBlocks:
    def test_unknown_block_type_rejected(self):
        with pytest.raises(ValueError, match="Unsupported content block type"):
            block_from_dict({"type": "image", "source": {}})

    def test_tool_result_list_content_joined(self):
        block = block_from_dict({
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
        })
        assert block == ToolResultBlock(tool_use_id="t1", content="ab")

    def test_is_error_only_emitted_when_true(self):
        assert "is_error" not in block_to_dict(ToolResultBlock("t1", "fine"))
        assert block_to_dict(ToolResultBlock("t1", "bad", is_error=True))["is_error"] is True


class TestMessage:
    def test_plain_text_is_not_structured(self):
        msg = Message(role="user", content="hello")
        assert not msg.has_structured_content
        assert msg.blocks == [TextBlock("hello")]

    def test_tool_blocks_are_structured(self):
        msg = Message(role="assistant", content=[
            TextBlock("let me look"),
            ToolUseBlock(id="t1", name="read_file", input={"path": "a.md"}),
        ])
        assert msg.has_structured_content
        assert msg.text() == "let me look"
        assert [u.name for u in msg.tool_uses()] == ["read_file"]

    def test_invalid_role_rejected(self):
        with pytest.raises(ValueError):
            Message.from_dict({"role": "system", "content": "x"})


class TestConversation:
    def test_dict_round_trip_preserves_blocks_and_times(self):
        conv = Conversation(
            name="Garden",
            created_at=datetime(2026, 1, 1, tzinfo=UTC),
            updated_at=datetime(2026, 1, 2, tzinfo=UTC),
            messages=[
                Message(role="user", content="list my notes"),
                Message(role="assistant", content=[ToolUseBlock("t1", "list_files", {})]),
                Message(role="user", content=[ToolResultBlock("t1", "ideas.md")]),
            ],
            summary="earlier stuff",
        )
        restored = Conversation.from_dict(conv.to_dict())
        assert restored == conv

    def test_first_user_text_skips_tool_results(self):
        conv = Conversation(messages=[
            Message(role="user", content=[ToolResultBlock("t1", "x")]),
            Message(role="user", content="real question"),
        ])
        assert conv.first_user_text() == "real question"


class TestModelResponse:
    def test_from_dict(self):
        resp = ModelResponse.from_dict({
            "content": [
                {"type": "text", "text": "one"},
                {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a"}},
                {"type": "text", "text": "two"},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })
        assert resp.text() == "one\ntwo"
        assert resp.tool_uses()[0].input == {"path": "a"}
        assert resp.stop_reason == "tool_use"


class TestRetryPolicy:
    def test_delays_consumed_in_order(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert [policy.delay_for(i) for i in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, None]
