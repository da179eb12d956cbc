"""Tests for ContextManager: estimation, pruning, capping, truncation."""

from unittest.mock import AsyncMock

import pytest

from vaultchat.api.context import SUMMARY_DELIMITER, ContextManager, ModelSummarizer
from vaultchat.api.errors import ApiError, ErrorKind
from vaultchat.api.models import Message, TextBlock, ToolResultBlock, ToolUseBlock
from vaultchat.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings(**overrides) -> Settings:
    values = {"ANTHROPIC_API_KEY": "test-key"}
    values.update(overrides)
    return Settings(**values)


def _user(text: str) -> Message:
    return Message(role="user", content=text)


def _assistant(text: str) -> Message:
    return Message(role="assistant", content=[TextBlock(text)])


def _tool_round(tool_id: str, result: str = "result text") -> list[Message]:
    return [
        Message(role="assistant", content=[ToolUseBlock(id=tool_id, name="read_file", input={"path": "a.md"})]),
        Message(role="user", content=[ToolResultBlock(tool_use_id=tool_id, content=result)]),
    ]


def _assert_pairs_intact(messages: list[Message]) -> None:
    uses = {u.id for m in messages for u in m.tool_uses()}
    for m in messages:
        for r in m.tool_results():
            assert r.tool_use_id in uses, f"orphaned tool_result {r.tool_use_id}"


def _conversation(rounds: int) -> list[Message]:
    history: list[Message] = []
    for i in range(rounds):
        history.append(_user(f"question number {i} about the garden"))
        history.extend(_tool_round(f"t{i}"))
        history.append(_assistant(f"answer number {i}"))
    return history


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


class TestEstimate:
    def test_chars_over_four_rounded_up(self):
        assert ContextManager.estimate_tokens("") == 0
        assert ContextManager.estimate_tokens("abcd") == 1
        assert ContextManager.estimate_tokens("abcde") == 2

    def test_monotonic_in_length(self):
        values = [ContextManager.estimate_tokens("x" * n) for n in range(0, 200)]
        assert values == sorted(values)

    def test_counts_tool_input_and_results(self):
        blocks = [
            ToolUseBlock(id="t1", name="read_file", input={"path": "notes.md"}),
            ToolResultBlock(tool_use_id="t1", content="x" * 40),
        ]
        assert ContextManager.estimate_tokens(blocks) > ContextManager.estimate_tokens("x" * 40)

    def test_usage_ratio(self):
        ctx = ContextManager(_settings(context_window_tokens=100))
        assert ctx.usage_ratio([_user("x" * 200)]) == pytest.approx(0.5)


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


class TestPrune:
    def test_drops_acknowledgments_outside_window(self):
        ctx = ContextManager(_settings())
        history = [_user("thanks!"), _assistant("You're welcome, happy to help."), _user("ok")]
        history += [_user(f"real message {i}") for i in range(5)]

        pruned = ctx.prune_low_value(history)

        assert [m.text() for m in pruned] == [m.text() for m in history if m.text() not in ("thanks!", "ok")]

    def test_never_touches_last_five(self):
        ctx = ContextManager(_settings())
        history = [_user("ok") for _ in range(8)]
        pruned = ctx.prune_low_value(history)
        assert len(pruned) == 5

    def test_structured_messages_never_pruned(self):
        ctx = ContextManager(_settings())
        history = _tool_round("t1", result="k") + [_user(f"message {i}") for i in range(5)]
        assert ctx.prune_low_value(history) == history

    def test_short_messages_are_low_value(self):
        ctx = ContextManager(_settings())
        assert ctx.is_low_value(_user("hm"))
        assert not ctx.is_low_value(_user("what is in ideas.md?"))


# ---------------------------------------------------------------------------
# Hard cap and pairing
# ---------------------------------------------------------------------------


class TestTruncate:
    def test_caps_history_length_keeping_pairs(self):
        ctx = ContextManager(_settings())
        result = ctx.truncate(_conversation(5))
        # A cut at 10 would orphan a tool_result, so one extra message is kept
        assert len(result.messages) == 11
        assert result.messages[0].tool_uses()
        assert not result.needs_summary

    def test_never_orphans_tool_results(self):
        ctx = ContextManager(_settings())
        for rounds in range(1, 8):
            history = _conversation(rounds)
            for extra in range(4):
                messages = ctx.truncate(history[: len(history) - extra]).messages
                _assert_pairs_intact(messages)

    def test_pair_safe_cut_moves_earlier(self):
        history = [_user("start")] + _tool_round("t1") + [_assistant("done")]
        # Cutting at 2 would keep the result of t1 without its tool_use
        assert ContextManager.pair_safe_cut(history, 2) == 1

    def test_input_not_mutated(self):
        ctx = ContextManager(_settings())
        history = _conversation(2)
        history[2] = Message(role="user", content=[ToolResultBlock("t0", "y" * 2000)])
        history += [_user(f"more {i}") for i in range(4)]
        before = [m.to_dict() for m in history]
        ctx.truncate(history)
        assert [m.to_dict() for m in history] == before

    def test_old_tool_results_truncated_recent_preserved(self):
        ctx = ContextManager(_settings())
        big = "z" * 1200
        history = _tool_round("t1", result=big) + [_user("a question"), _assistant("an answer")] + _tool_round("t2", result=big)

        messages = ctx.truncate(history).messages

        old_result = messages[1].tool_results()[0].content
        assert old_result.startswith("z" * 500)
        assert "[... truncated 1200 chars to save tokens ...]" in old_result
        assert messages[-1].tool_results()[0].content == big

    def test_long_assistant_text_truncated(self):
        ctx = ContextManager(_settings())
        long_text = "w" * 3000
        history = [_assistant(long_text)] + [_user(f"follow-up number {i}") for i in range(3)]

        messages = ctx.truncate(history).messages

        assert messages[0].text().endswith("[... previous response truncated (3000 chars) ...]")
        assert messages[0].text().startswith("w" * 2000)

    def test_idempotent(self):
        ctx = ContextManager(_settings())
        history = _conversation(4)
        history[10] = Message(role="user", content=[ToolResultBlock("t2", "q" * 5000)])
        once = ctx.truncate(history).messages
        twice = ctx.truncate(once).messages
        assert [m.to_dict() for m in twice] == [m.to_dict() for m in once]

    def test_summary_split_when_over_threshold(self):
        ctx = ContextManager(_settings(context_window_tokens=50))
        history = _conversation(4)

        result = ctx.truncate(history)

        assert result.needs_summary
        assert len(result.messages) <= 7
        assert result.to_summarize + result.messages == history
        _assert_pairs_intact(result.messages)

    def test_no_summary_when_disabled(self):
        ctx = ContextManager(_settings(context_window_tokens=100, summarization_enabled=False))
        result = ctx.truncate(_conversation(4))
        assert not result.needs_summary
        assert len(result.messages) <= 11


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


class TestSummarize:
    def test_digest_format(self):
        ctx = ContextManager(_settings())
        history = [_user("please tidy my notes")] + _tool_round("t1")
        digest = ctx.summarize(history)
        lines = digest.splitlines()
        assert lines[0] == "User: please tidy my notes"
        assert lines[1] == "Assistant: [tools: read_file]"
        assert lines[2] == "User: [tool results: 1]"
        assert lines[-1] == SUMMARY_DELIMITER

    def test_system_prompt_with_summary(self):
        assert ContextManager.system_prompt_with_summary("base", "") == "base"
        prompt = ContextManager.system_prompt_with_summary("base", "we talked")
        assert prompt.startswith("## Summary of earlier conversation")
        assert prompt.endswith("we talked\n\nbase")

    def test_merge_summary(self):
        assert ContextManager.merge_summary("", "new") == "new"
        assert ContextManager.merge_summary("old", "new") == "old\n\nnew"

    @pytest.mark.asyncio
    async def test_model_summarizer_uses_summary_model(self):
        settings = _settings()
        client = AsyncMock()
        client.complete.return_value = "  They discussed the garden.  "
        summarizer = ModelSummarizer(client, ContextManager(settings), settings)

        summary = await summarizer.summarize([_user("garden plans please")])

        assert summary == f"They discussed the garden.\n{SUMMARY_DELIMITER}"
        assert client.complete.call_args.kwargs["model"] == settings.summary_model

    @pytest.mark.asyncio
    async def test_model_summarizer_falls_back_to_digest(self):
        settings = _settings()
        client = AsyncMock()
        client.complete.side_effect = ApiError(529, ErrorKind.OVERLOADED, "busy", retries_exhausted=True)
        summarizer = ModelSummarizer(client, ContextManager(settings), settings)

        summary = await summarizer.summarize([_user("garden plans please")])

        assert summary.startswith("User: garden plans please")
        assert summary.endswith(SUMMARY_DELIMITER)
