"""Agent runner -- drives one tool-augmented conversational turn.

AgentLoop is the turn state machine:

    idle -> awaiting_model -> (executing_tools -> awaiting_model)*
         -> done | truncated | stopped_by_user | max_iterations_reached | failed

All loop state lives in TurnState, passed into and returned from step().
AgentRunner wraps the loop with conversation loading, single-flight
enforcement per conversation, cancellation and persistence.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from vaultchat.api.client import RequestClient
from vaultchat.api.context import ContextManager, ModelSummarizer
from vaultchat.api.errors import (
    TurnInProgressError,
    UnexpectedStopReason,
    VaultChatError,
    user_notice,
)
from vaultchat.api.models import Conversation, Message, TextBlock, ToolResultBlock, ToolSpec, ToolUseBlock
from vaultchat.api.observer import SafeObserver, ToolCallRecord, TurnObserver
from vaultchat.api.prompts import NAMING_SYSTEM_PROMPT, build_system_prompt, naming_prompt, quick_ask_prompt
from vaultchat.api.tools import ToolExecutor
from vaultchat.config import Settings
from vaultchat.storage.conversations import ConversationStore

logger = logging.getLogger(__name__)

TRUNCATED_NOTICE = "Response was truncated (max tokens reached). Type 'continue' to resume."
MAX_ITERATIONS_NOTICE = "Reached maximum tool use iterations"
STOPPED_NOTICE = "Stopped by user"

_NAMING_MESSAGES = 4


class TurnStatus(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    TRUNCATED = "truncated"
    STOPPED_BY_USER = "stopped_by_user"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    TurnStatus.DONE,
    TurnStatus.TRUNCATED,
    TurnStatus.STOPPED_BY_USER,
    TurnStatus.MAX_ITERATIONS_REACHED,
    TurnStatus.FAILED,
})


class CancellationToken:
    """Caller-settable flag, checked by the loop between iterations."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class TurnState:
    """Working copy of one turn: history, summary and loop bookkeeping."""

    messages: list[Message]
    summary: str = ""
    status: TurnStatus = TurnStatus.IDLE
    iterations: int = 0
    final_text: str = ""
    notice: str | None = None
    error: BaseException | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status.terminal


class AgentLoop:
    """Runs the ask-model / run-tools cycle until a terminal status."""

    def __init__(
        self,
        client: RequestClient,
        context: ContextManager,
        executor: ToolExecutor,
        tools: Sequence[ToolSpec],
        settings: Settings,
        summarizer: ModelSummarizer | None = None,
    ) -> None:
        self._client = client
        self._context = context
        self._executor = executor
        self._tools = list(tools)
        self._tool_names = {t.name for t in self._tools}
        self._settings = settings
        self._summarizer = summarizer

    def start_turn(
        self, messages: Sequence[Message], summary: str, user_message: str
    ) -> TurnState:
        """Build the turn state with the user message appended."""
        history = list(messages)
        history.append(Message(role="user", content=user_message))
        return TurnState(messages=history, summary=summary, status=TurnStatus.AWAITING_MODEL)

    async def run(
        self,
        state: TurnState,
        system_prompt: str,
        observer: TurnObserver | None = None,
        cancel: CancellationToken | None = None,
    ) -> TurnState:
        """Step until terminal. Errors end the turn as FAILED, history intact."""
        observer = SafeObserver(observer)
        cancel = cancel or CancellationToken()
        while not state.terminal:
            try:
                state = await self.step(state, system_prompt, observer, cancel)
            except VaultChatError as e:
                logger.error("Turn failed: %s", e)
                state = self._fail(state, e)
            except Exception as e:
                logger.exception("Unexpected error during turn")
                state = self._fail(state, e)
        observer.on_status(state.status.value, state.notice or "")
        return state

    async def step(
        self,
        state: TurnState,
        system_prompt: str,
        observer: TurnObserver,
        cancel: CancellationToken,
    ) -> TurnState:
        """One model round-trip plus any tool execution it asks for."""
        if state.status != TurnStatus.AWAITING_MODEL:
            raise ValueError(f"step() called in status {state.status}")

        if cancel.cancelled:
            return self._stop(state)
        if state.iterations >= self._settings.max_iterations:
            logger.warning("Tool loop reached max_iterations=%d", self._settings.max_iterations)
            state.status = TurnStatus.MAX_ITERATIONS_REACHED
            state.notice = MAX_ITERATIONS_NOTICE
            return state

        state.iterations += 1
        outgoing = await self._prepare_history(state, system_prompt, observer)
        observer.on_status("thinking")
        response = await self._client.send(
            outgoing,
            system_prompt=self._context.system_prompt_with_summary(system_prompt, state.summary),
            tools=self._tools or None,
            on_retry=observer.on_retry,
        )
        logger.debug(
            "Iteration %d: stop_reason=%s, blocks=%d",
            state.iterations, response.stop_reason, len(response.content),
        )

        stop_reason = response.stop_reason
        tool_uses = response.tool_uses()

        if stop_reason in ("end_turn", "stop_sequence") or (stop_reason == "tool_use" and not tool_uses):
            if stop_reason == "tool_use":
                logger.warning("stop_reason=tool_use without tool_use blocks, ending turn")
            self._append_assistant(state, response.content)
            state.final_text = response.text()
            state.status = TurnStatus.DONE
            return state

        if stop_reason == "tool_use" or (stop_reason == "max_tokens" and tool_uses):
            if stop_reason == "max_tokens":
                logger.warning("Response hit max_tokens with %d tool calls, executing partial plan", len(tool_uses))
            self._append_assistant(state, response.content)
            state.status = TurnStatus.EXECUTING_TOOLS
            observer.on_status("using_tools")
            results = await self._execute_tools(tool_uses, state, observer)
            state.messages.append(Message(role="user", content=results))
            state.status = TurnStatus.AWAITING_MODEL
            if cancel.cancelled:
                return self._stop(state)
            observer.on_status("processing_results")
            return state

        if stop_reason == "max_tokens":
            self._append_assistant(state, response.content)
            state.final_text = response.text()
            state.status = TurnStatus.TRUNCATED
            state.notice = TRUNCATED_NOTICE
            return state

        raise UnexpectedStopReason(stop_reason)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _prepare_history(
        self, state: TurnState, system_prompt: str, observer: TurnObserver
    ) -> list[Message]:
        """Bounded outgoing history; folds old messages into the summary if asked."""
        full_prompt = self._context.system_prompt_with_summary(system_prompt, state.summary)
        result = self._context.truncate(state.messages, system_prompt=full_prompt)
        if not result.needs_summary:
            return result.messages

        observer.on_status("summarizing")
        if self._summarizer is not None:
            digest = await self._summarizer.summarize(result.to_summarize)
        else:
            digest = self._context.summarize(result.to_summarize)
        state.summary = self._context.merge_summary(state.summary, digest)

        # Summarized messages leave the working history for good
        last = result.to_summarize[-1]
        for i, msg in enumerate(state.messages):
            if msg is last:
                state.messages = state.messages[i + 1:]
                break
        observer.on_summarized(len(result.to_summarize), state.summary)
        return result.messages

    async def _execute_tools(
        self,
        tool_uses: Sequence[ToolUseBlock],
        state: TurnState,
        observer: TurnObserver,
    ) -> list[ToolResultBlock]:
        """Run tool calls in order; failures become error results."""
        results: list[ToolResultBlock] = []
        for use in tool_uses:
            observer.on_tool_start(use.name, use.input)
            start_time = time.monotonic()
            is_error = False
            if use.name not in self._tool_names:
                result = f"Error: Unknown tool: {use.name}"
                is_error = True
            else:
                try:
                    result = str(await self._executor.execute(use.name, use.input))
                except Exception as e:
                    logger.warning("Tool %s failed: %s", use.name, e)
                    result = f"Error executing {use.name}: {e}"
                    is_error = True
            duration_ms = int((time.monotonic() - start_time) * 1000)

            record = ToolCallRecord(
                name=use.name,
                input=use.input,
                result=result,
                is_error=is_error,
                duration_ms=duration_ms,
            )
            state.tool_calls.append(record)
            observer.on_tool_end(record)
            results.append(ToolResultBlock(tool_use_id=use.id, content=result, is_error=is_error))
        return results

    @staticmethod
    def _append_assistant(state: TurnState, content: Sequence[Any]) -> None:
        blocks = list(content) or [TextBlock(text="(empty response)")]
        state.messages.append(Message(role="assistant", content=blocks))

    @staticmethod
    def _stop(state: TurnState) -> TurnState:
        logger.info("Turn cancelled after %d iterations", state.iterations)
        state.status = TurnStatus.STOPPED_BY_USER
        state.notice = STOPPED_NOTICE
        return state

    @staticmethod
    def _fail(state: TurnState, error: BaseException) -> TurnState:
        state.status = TurnStatus.FAILED
        state.error = error
        state.notice = user_notice(error).notice
        return state


@dataclass
class TurnOutcome:
    """What the caller gets back from AgentRunner.run_turn()."""

    conversation_id: str
    status: TurnStatus
    text: str
    notice: str | None = None
    detail: str | None = None
    error_kind: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "text": self.text,
            "notice": self.notice,
            "detail": self.detail,
            "error_kind": self.error_kind,
            "iterations": self.iterations,
            "tool_calls": [
                {
                    "name": tc.name,
                    "input": tc.input,
                    "result": tc.preview(),
                    "is_error": tc.is_error,
                    "duration_ms": tc.duration_ms,
                }
                for tc in self.tool_calls
            ],
        }


class AgentRunner:
    """Runs conversational turns against stored conversations.

    One turn per conversation at a time; a second run_turn() for the
    same conversation while one is active raises TurnInProgressError.
    """

    def __init__(
        self,
        client: RequestClient,
        store: ConversationStore,
        executor: ToolExecutor,
        tools: Sequence[ToolSpec],
        settings: Settings,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        context = ContextManager(settings)
        summarizer = ModelSummarizer(client, context, settings)
        self._loop = AgentLoop(client, context, executor, tools, settings, summarizer)
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()
        self._active: dict[str, CancellationToken] = {}
        # Ids this runner has read from or written to the store
        self._persisted: set[str] = set()

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def active_conversations(self) -> list[str]:
        return list(self._active)

    async def run_turn(
        self,
        conversation_id: str | None,
        user_message: str,
        observer: TurnObserver | None = None,
        active_file: str | None = None,
    ) -> TurnOutcome:
        """Execute a single conversational turn.

        Steps:
        1. Claim the conversation (single-flight) and load or create it
        2. Append the user message to a working copy
        3. Run the agent loop to a terminal status
        4. Write the working copy back and persist when auto_save is on
        5. Return the outcome (text, status, notices, tool calls)
        """
        conversation_id = conversation_id or uuid.uuid4().hex
        if conversation_id in self._active:
            raise TurnInProgressError(conversation_id)
        token = CancellationToken()
        self._active[conversation_id] = token

        try:
            conversation = await self._get_or_create_conversation(conversation_id)
            system_prompt = await asyncio.to_thread(
                build_system_prompt, self._settings.vault_dir, active_file
            )
            state = self._loop.start_turn(conversation.messages, conversation.summary, user_message)
            state = await self._loop.run(state, system_prompt, observer, token)

            conversation.messages = state.messages
            conversation.summary = state.summary
            conversation.touch()
            if self._settings.auto_save:
                await self._persist(conversation)
        finally:
            self._active.pop(conversation_id, None)

        outcome = TurnOutcome(
            conversation_id=conversation_id,
            status=state.status,
            text=state.final_text,
            notice=state.notice,
            tool_calls=state.tool_calls,
            iterations=state.iterations,
        )
        if state.error is not None:
            notice = user_notice(state.error)
            outcome.notice = notice.notice
            outcome.detail = notice.detail
            outcome.error_kind = str(getattr(state.error, "kind", type(state.error).__name__))
        logger.info(
            "Turn finished: conversation=%s status=%s iterations=%d tools=%d",
            conversation_id, state.status.value, state.iterations, len(state.tool_calls),
        )
        return outcome

    def cancel(self, conversation_id: str) -> bool:
        """Request cancellation of the active turn. False if none is running."""
        token = self._active.get(conversation_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def save_conversation(self, conversation_id: str) -> bool:
        """Persist an open conversation explicitly (when auto_save is off).

        A conversation that is only in the store is already saved. False
        when neither the cache nor the store knows the id.
        """
        if conversation_id in self._active:
            raise TurnInProgressError(conversation_id)
        conversation = self._open_conversation(conversation_id)
        if conversation is None:
            return conversation_id in self._store
        await self._persist(conversation)
        return True

    async def clear_conversation(self, conversation_id: str) -> bool:
        """Drop history and summary of a conversation, keeping its id."""
        if conversation_id in self._active:
            raise TurnInProgressError(conversation_id)
        conversation = self._open_conversation(conversation_id) or await self._store.load(conversation_id)
        if conversation is None:
            return False
        conversation.messages = []
        conversation.summary = ""
        conversation.touch()
        await self._persist(conversation)
        return True

    async def forget(self, conversation_id: str) -> None:
        """Drop an open conversation from the working cache."""
        self._conversations.pop(conversation_id, None)
        self._persisted.discard(conversation_id)

    async def quick_ask(self, question: str, file_content: str) -> str:
        """Single-shot question about a file's content; no tools, no history."""
        return await self._client.complete(quick_ask_prompt(file_content, question))

    async def name_conversation(self, conversation: Conversation) -> str:
        """Short title via the model from the first few exchanges."""
        transcript = ModelSummarizer.serialize_for_summary(
            [m for m in conversation.messages if not m.has_structured_content][:_NAMING_MESSAGES]
        )
        if not transcript:
            return ""
        title = await self._client.complete(
            naming_prompt(transcript),
            system_prompt=NAMING_SYSTEM_PROMPT,
            model=self._settings.summary_model,
            max_tokens=32,
        )
        return title.strip().strip('"').strip()[:80]

    async def _get_or_create_conversation(self, conversation_id: str) -> Conversation:
        """Open conversation from cache, store, or new; LRU-bounded cache."""
        cached = self._open_conversation(conversation_id)
        if cached is not None:
            self._conversations.move_to_end(conversation_id)
            return cached

        conversation = await self._store.load(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id)
        else:
            self._persisted.add(conversation_id)

        while len(self._conversations) >= self._settings.max_conversations:
            evicted_id, _ = self._conversations.popitem(last=False)
            self._persisted.discard(evicted_id)
        self._conversations[conversation_id] = conversation
        return conversation

    def _open_conversation(self, conversation_id: str) -> Conversation | None:
        """Cached conversation, unless the store has since evicted or deleted it."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        if conversation_id in self._persisted and conversation_id not in self._store:
            logger.info("Dropping cached conversation %s no longer in the store", conversation_id)
            self._conversations.pop(conversation_id, None)
            self._persisted.discard(conversation_id)
            return None
        return conversation

    async def _persist(self, conversation: Conversation) -> None:
        await self._store.save(conversation)
        self._persisted.add(conversation.id)
